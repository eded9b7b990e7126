from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db
from ..core.errors import NotFound
from ..models.models import Apartment, User
from ..schemas.schemas import ApartmentCreate, ApartmentRead, ApartmentUpdate, AssignTenantRequest, ListResponse
from ..services import apartments as apartment_service
from ..services import consistency
from ..services.policy import scope_message

router = APIRouter()


@router.post("", response_model=ApartmentRead, status_code=status.HTTP_201_CREATED)
def create_apartment(
    payload: ApartmentCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Apartment:
    return apartment_service.create_apartment(db, actor, payload.model_dump())


@router.get("", response_model=ListResponse[ApartmentRead])
def list_apartments(
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    apartments = apartment_service.list_apartments(db, actor)
    return {
        "items": apartments,
        "count": len(apartments),
        "message": scope_message(db, Apartment, len(apartments), "apartments"),
    }


@router.get("/{apartment_id}", response_model=ApartmentRead)
def get_apartment(
    apartment_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Apartment:
    return apartment_service.get_apartment(db, actor, apartment_id)


@router.patch("/{apartment_id}", response_model=ApartmentRead)
def update_apartment(
    apartment_id: int,
    payload: ApartmentUpdate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Apartment:
    apartment = apartment_service.get_apartment_for_update(db, apartment_id)
    return apartment_service.update_apartment(db, apartment, actor, payload.model_dump(exclude_unset=True))


@router.post("/{apartment_id}/assign-tenant", response_model=ApartmentRead)
def assign_tenant(
    apartment_id: int,
    payload: AssignTenantRequest,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Apartment:
    apartment = apartment_service.get_apartment_for_update(db, apartment_id)
    tenant = db.get(User, payload.tenant_id)
    if tenant is None:
        raise NotFound("Tenant not found.")
    return consistency.assign_tenant(
        db,
        apartment,
        tenant,
        actor,
        lease_start=payload.lease_start,
        lease_end=payload.lease_end,
    )


@router.post("/{apartment_id}/remove-tenant", response_model=ApartmentRead)
def remove_tenant(
    apartment_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Apartment:
    apartment = apartment_service.get_apartment_for_update(db, apartment_id)
    return consistency.remove_tenant(db, apartment, actor)


@router.delete("/{apartment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_apartment(
    apartment_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> Response:
    apartment = apartment_service.get_apartment_for_update(db, apartment_id)
    consistency.delete_apartment(db, apartment, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
