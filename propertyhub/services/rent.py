from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..constants import PaymentStatus, ReminderType, UserRole
from ..core.errors import Conflict, NotFound, ValidationError
from ..models.models import Apartment, RentPayment, RentReminder, User, utcnow
from .audit import audit_log
from .consistency import atomic
from .notifications import NotificationDispatcher
from .policy import Action, can_act, ensure_can_act, scope_payments

logger = logging.getLogger(__name__)


@dataclass
class RentScanResult:
    marked_overdue: List[int] = field(default_factory=list)
    overdue_reminders: List[int] = field(default_factory=list)
    initial_reminders: List[int] = field(default_factory=list)
    deliveries: int = 0

    @property
    def reminders_sent(self) -> int:
        return len(self.overdue_reminders) + len(self.initial_reminders)


def claim_reminder(
    session: Session,
    payment: RentPayment,
    reminder_type: str,
    *,
    channel: str = "email",
    sent_by_user_id: Optional[int] = None,
) -> Optional[RentReminder]:
    """Insert a reminder unless an identical once-only one already exists.

    The insert runs in a SAVEPOINT against the partial unique index, so a
    concurrent claimant gets ``None`` instead of a second reminder.
    """
    if reminder_type in ReminderType.ONCE_PER_PAYMENT and payment.has_reminder(reminder_type):
        return None
    try:
        with session.begin_nested():
            reminder = RentReminder(
                payment_id=payment.id,
                reminder_type=reminder_type,
                channel=channel,
                sent_by_user_id=sent_by_user_id,
                sent_at=utcnow(),
            )
            session.add(reminder)
            session.flush()
    except IntegrityError:
        logger.info("%s reminder for payment %s already claimed", reminder_type, payment.id)
        return None
    return reminder


def _reminder_text(payment: RentPayment, reminder_type: str) -> Tuple[str, str]:
    label = payment.apartment.apartment_number if payment.apartment else "your apartment"
    due = f"{payment.due_date:%b %d, %Y}"
    amount = f"{Decimal(payment.amount):,.2f}"
    if reminder_type == ReminderType.OVERDUE:
        return "Rent payment overdue", f"Your rent of {amount} for {label} was due on {due} and is now overdue."
    if reminder_type == ReminderType.INITIAL:
        return "Rent payment due soon", f"Your rent of {amount} for {label} is due on {due}."
    return "Rent payment reminder", f"This is a reminder that your rent of {amount} for {label} is due on {due}."


def send_reminder(
    session: Session,
    dispatcher: Optional[NotificationDispatcher],
    payment: RentPayment,
    reminder_type: str,
) -> int:
    if dispatcher is None:
        return 0
    title, message = _reminder_text(payment, reminder_type)
    try:
        return dispatcher.notify(
            session,
            [payment.tenant_id],
            title=title,
            message=message,
            level="warning" if reminder_type == ReminderType.OVERDUE else "info",
            category="rent",
            link_url=f"/rent/{payment.id}",
        )
    except Exception:
        logger.exception("Rent reminder for payment %s failed", payment.id)
        return 0


def scan_rent_payments(
    session: Session,
    *,
    now: Optional[datetime] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    window_days: Optional[int] = None,
) -> RentScanResult:
    """Mark late payments overdue and send due-soon and overdue reminders.

    Safe to rerun: each payment gets at most one ``initial`` and one
    ``overdue`` reminder, and reminders go out only once their claim is
    committed.
    """
    now = now or utcnow()
    window_end = now + timedelta(days=window_days if window_days is not None else settings.rent_reminder_window_days)
    result = RentScanResult()

    payments = (
        session.query(RentPayment)
        .filter(RentPayment.status == PaymentStatus.PENDING, RentPayment.due_date <= window_end)
        .order_by(RentPayment.due_date.asc(), RentPayment.id.asc())
        .all()
    )

    claimed: List[Tuple[int, str]] = []
    try:
        for payment in payments:
            if payment.due_date < now:
                marked = session.execute(
                    update(RentPayment)
                    .where(RentPayment.id == payment.id, RentPayment.status == PaymentStatus.PENDING)
                    .values(status=PaymentStatus.OVERDUE)
                ).rowcount
                if marked:
                    result.marked_overdue.append(payment.id)
                if claim_reminder(session, payment, ReminderType.OVERDUE):
                    claimed.append((payment.id, ReminderType.OVERDUE))
                    result.overdue_reminders.append(payment.id)
            elif payment.due_date > now:
                if claim_reminder(session, payment, ReminderType.INITIAL):
                    claimed.append((payment.id, ReminderType.INITIAL))
                    result.initial_reminders.append(payment.id)
        session.commit()
    except Exception:
        session.rollback()
        raise

    for payment_id, reminder_type in claimed:
        payment = session.get(RentPayment, payment_id)
        if payment is not None:
            result.deliveries += send_reminder(session, dispatcher, payment, reminder_type)

    logger.info(
        "Rent scan: %d marked overdue, %d overdue reminders, %d due-soon reminders",
        len(result.marked_overdue),
        len(result.overdue_reminders),
        len(result.initial_reminders),
    )
    return result


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def load_payment(session: Session, payment_id: int) -> RentPayment:
    payment = session.get(RentPayment, payment_id)
    if payment is None:
        raise NotFound("Rent payment not found.")
    return payment


def create_payment(
    session: Session,
    actor: User,
    *,
    apartment_id: int,
    due_date: datetime,
    tenant_id: Optional[int] = None,
    amount: Optional[Decimal] = None,
    notes: Optional[str] = None,
) -> RentPayment:
    apartment = session.get(Apartment, apartment_id)
    if apartment is None:
        raise NotFound("Apartment not found.")
    ensure_can_act(actor, Action.RENT_CREATE, apartment)
    if not apartment.is_occupied:
        raise Conflict("The apartment has no tenant to bill.")

    if actor.role == UserRole.TENANT:
        if tenant_id not in (None, actor.id):
            raise ValidationError({"tenant_id": "Tenants can only record their own payments."})
        payer_id = actor.id
    else:
        payer_id = tenant_id or apartment.current_tenant_id
        if payer_id != apartment.current_tenant_id:
            raise ValidationError({"tenant_id": "Payments must be billed to the apartment's current tenant."})

    value = Decimal(apartment.rent_amount) if amount is None else Decimal(amount)
    if value < 0:
        raise ValidationError({"amount": "Amount must be a non-negative number."})
    due_date = _to_naive_utc(due_date)

    with atomic(session):
        payment = RentPayment(
            apartment_id=apartment.id,
            tenant_id=payer_id,
            amount=value,
            due_date=due_date,
            status=PaymentStatus.PENDING,
            notes=(notes or "").strip() or None,
        )
        session.add(payment)
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="rent.create",
            target_entity_type="RentPayment",
            target_entity_id=str(payment.id),
            after={"apartment_id": apartment.id, "tenant_id": payer_id, "amount": value, "due_date": due_date},
        )
    return payment


def list_payments(session: Session, actor: User, status: Optional[str] = None) -> List[RentPayment]:
    ensure_can_act(actor, Action.RENT_READ)
    query = scope_payments(session.query(RentPayment), actor)
    if status:
        if status not in PaymentStatus.ALL:
            raise ValidationError({"status": f"Status must be one of: {', '.join(PaymentStatus.ALL)}."})
        query = query.filter(RentPayment.status == status)
    return query.order_by(RentPayment.due_date.desc(), RentPayment.id.desc()).all()


def list_overdue(session: Session, actor: User) -> List[RentPayment]:
    ensure_can_act(actor, Action.RENT_REMIND)
    query = scope_payments(session.query(RentPayment), actor)
    return (
        query.filter(RentPayment.status == PaymentStatus.OVERDUE)
        .order_by(RentPayment.due_date.asc(), RentPayment.id.asc())
        .all()
    )


def list_upcoming(session: Session, actor: User, *, now: Optional[datetime] = None) -> List[RentPayment]:
    ensure_can_act(actor, Action.RENT_REMIND)
    query = scope_payments(session.query(RentPayment), actor)
    return (
        query.filter(RentPayment.status == PaymentStatus.PENDING, RentPayment.due_date >= (now or utcnow()))
        .order_by(RentPayment.due_date.asc(), RentPayment.id.asc())
        .all()
    )


def get_payment(session: Session, actor: User, payment_id: int) -> RentPayment:
    payment = session.get(RentPayment, payment_id)
    if payment is None or not can_act(actor, Action.RENT_READ, payment):
        raise NotFound("Rent payment not found.")
    return payment


def mark_paid(
    session: Session,
    payment: RentPayment,
    actor: User,
    *,
    payment_method: Optional[str] = None,
    reference_number: Optional[str] = None,
    paid_date: Optional[datetime] = None,
) -> RentPayment:
    ensure_can_act(actor, Action.RENT_MARK_PAID, payment)
    if payment.status == PaymentStatus.PAID:
        raise Conflict("This payment is already marked as paid.")

    paid_at = _to_naive_utc(paid_date) if paid_date else utcnow()
    previous = payment.status
    with atomic(session):
        updated = session.execute(
            update(RentPayment)
            .where(RentPayment.id == payment.id, RentPayment.status != PaymentStatus.PAID)
            .values(
                status=PaymentStatus.PAID,
                paid_date=paid_at,
                payment_method=payment_method,
                reference_number=reference_number,
            )
        ).rowcount
        if updated != 1:
            raise Conflict("This payment is already marked as paid.")
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="rent.mark_paid",
            target_entity_type="RentPayment",
            target_entity_id=str(payment.id),
            before={"status": previous},
            after={"status": PaymentStatus.PAID, "paid_date": paid_at},
        )
    session.refresh(payment)
    return payment


def add_reminder(
    session: Session,
    payment: RentPayment,
    actor: User,
    *,
    reminder_type: Optional[str] = None,
    channel: str = "email",
    dispatcher: Optional[NotificationDispatcher] = None,
) -> RentReminder:
    ensure_can_act(actor, Action.RENT_REMIND, payment)
    if payment.status == PaymentStatus.PAID:
        raise Conflict("This payment has already been paid.")
    kind = reminder_type or (
        ReminderType.OVERDUE if payment.status == PaymentStatus.OVERDUE else ReminderType.REMINDER
    )
    if kind not in ReminderType.ALL:
        raise ValidationError({"reminder_type": f"Reminder type must be one of: {', '.join(ReminderType.ALL)}."})

    with atomic(session):
        reminder = claim_reminder(session, payment, kind, channel=channel, sent_by_user_id=actor.id)
        if reminder is None:
            raise Conflict(f"The {kind} reminder was already sent for this payment.")
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="rent.reminder",
            target_entity_type="RentPayment",
            target_entity_id=str(payment.id),
            after={"reminder_type": kind, "channel": channel},
        )

    send_reminder(session, dispatcher, payment, kind)
    session.refresh(reminder)
    return reminder
