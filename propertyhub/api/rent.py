from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db, get_dispatcher
from ..models.models import RentPayment, RentReminder, User
from ..schemas.schemas import (
    ListResponse,
    RentPaymentCreate,
    RentPaymentMarkPaid,
    RentPaymentRead,
    RentReminderCreate,
    RentReminderRead,
)
from ..services import rent as rent_service
from ..services.notifications import NotificationDispatcher
from ..services.policy import scope_message

router = APIRouter()


def _envelope(db: Session, payments: list, noun: str = "rent payments") -> dict:
    return {"items": payments, "count": len(payments), "message": scope_message(db, RentPayment, len(payments), noun)}


@router.post("", response_model=RentPaymentRead, status_code=status.HTTP_201_CREATED)
def create_rent_payment(
    payload: RentPaymentCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> RentPayment:
    return rent_service.create_payment(
        db,
        actor,
        apartment_id=payload.apartment_id,
        due_date=payload.due_date,
        tenant_id=payload.tenant_id,
        amount=payload.amount,
        notes=payload.notes,
    )


@router.get("", response_model=ListResponse[RentPaymentRead])
def list_rent_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    return _envelope(db, rent_service.list_payments(db, actor, status_filter))


@router.get("/overdue", response_model=ListResponse[RentPaymentRead])
def list_overdue_payments(
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    return _envelope(db, rent_service.list_overdue(db, actor), "overdue payments")


@router.get("/upcoming", response_model=ListResponse[RentPaymentRead])
def list_upcoming_payments(
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    return _envelope(db, rent_service.list_upcoming(db, actor), "upcoming payments")


@router.get("/{payment_id}", response_model=RentPaymentRead)
def get_rent_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> RentPayment:
    return rent_service.get_payment(db, actor, payment_id)


@router.patch("/{payment_id}/paid", response_model=RentPaymentRead)
def mark_rent_paid(
    payment_id: int,
    payload: RentPaymentMarkPaid,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> RentPayment:
    payment = rent_service.load_payment(db, payment_id)
    return rent_service.mark_paid(
        db,
        payment,
        actor,
        payment_method=payload.payment_method,
        reference_number=payload.reference_number,
        paid_date=payload.paid_date,
    )


@router.post("/{payment_id}/reminders", response_model=RentReminderRead, status_code=status.HTTP_201_CREATED)
def send_rent_reminder(
    payment_id: int,
    payload: Optional[RentReminderCreate] = None,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> RentReminder:
    payload = payload or RentReminderCreate()
    payment = rent_service.load_payment(db, payment_id)
    return rent_service.add_reminder(
        db,
        payment,
        actor,
        reminder_type=payload.reminder_type,
        channel=payload.channel,
        dispatcher=dispatcher,
    )
