from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db
from ..auth.jwt import require_roles
from ..constants import UserRole
from ..core.errors import ValidationError
from ..models.models import ServiceProvider, Tenant, User, normalize_service_types
from ..schemas.schemas import ListResponse, UserRead, UserSelfUpdate
from ..services.audit import audit_log
from ..services.policy import scope_message

router = APIRouter()

require_owner = require_roles(UserRole.OWNER)

PROVIDER_ONLY_FIELDS = ("company_name", "service_types")


@router.patch("/me", response_model=UserRead)
def update_current_user_profile(
    payload: UserSelfUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        return current_user

    if current_user.role != UserRole.SERVICE_PROVIDER:
        rejected = {field: "Only service providers have this field." for field in PROVIDER_ONLY_FIELDS if field in updates}
        if rejected:
            raise ValidationError(rejected)
    if "service_types" in updates:
        updates["service_types"] = normalize_service_types(updates["service_types"])
    if "company_name" in updates:
        updates["company_name"] = (updates["company_name"] or "").strip()
        if not updates["company_name"]:
            raise ValidationError({"company_name": "Company name is required for service providers"})

    before = {field: getattr(current_user, field) for field in updates}
    for field, value in updates.items():
        setattr(current_user, field, value.strip() if isinstance(value, str) else value)
    db.flush()
    audit_log(
        db_session=db,
        actor_user_id=current_user.id,
        action="user.profile_update",
        target_entity_type="User",
        target_entity_id=str(current_user.id),
        before=before,
        after={field: getattr(current_user, field) for field in updates},
    )
    db.commit()
    db.refresh(current_user)
    return current_user


@router.get("/tenants", response_model=ListResponse[UserRead])
def list_tenants(
    unassigned: bool = Query(False, description="Only tenants without a current apartment."),
    db: Session = Depends(get_db),
    _: User = Depends(require_owner),
) -> dict:
    query = db.query(Tenant).filter(Tenant.is_active.is_(True))
    if unassigned:
        query = query.filter(Tenant.current_apartment_id.is_(None))
    tenants = query.order_by(Tenant.last_name.asc(), Tenant.first_name.asc()).all()
    return {"items": tenants, "count": len(tenants), "message": scope_message(db, Tenant, len(tenants), "tenants")}


@router.get("/service-providers", response_model=ListResponse[UserRead])
def list_service_providers(
    service_type: Optional[str] = Query(None, description="Filter by a service type."),
    db: Session = Depends(get_db),
    _: User = Depends(require_owner),
) -> dict:
    providers = (
        db.query(ServiceProvider)
        .filter(ServiceProvider.is_active.is_(True))
        .order_by(ServiceProvider.company_name.asc(), ServiceProvider.id.asc())
        .all()
    )
    if service_type:
        wanted = service_type.strip().lower()
        providers = [provider for provider in providers if wanted in (provider.service_types or [])]
    return {
        "items": providers,
        "count": len(providers),
        "message": scope_message(db, ServiceProvider, len(providers), "service providers"),
    }
