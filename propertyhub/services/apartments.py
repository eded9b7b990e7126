from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..constants import ApartmentStatus
from ..core.errors import Conflict, NotFound, ValidationError
from ..models.models import Apartment, User
from .audit import audit_log
from .consistency import apartment_snapshot, atomic, release_tenant
from .policy import Action, can_act, ensure_can_act, scope_apartments

logger = logging.getLogger(__name__)

APARTMENT_NUMBER_RE = re.compile(r"^[A-Za-z0-9\- ]{1,20}$")
UPDATABLE_FIELDS = (
    "apartment_number",
    "location",
    "rent_amount",
    "rent_due_day",
    "amenities",
    "square_footage",
    "bedrooms",
    "bathrooms",
)
DUPLICATE_NUMBER_MESSAGE = "You already have an apartment with this number."


def validate_rent_due_day(value: Any) -> int:
    # bool is an int subclass; True must not pass as day 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError({"rent_due_day": "Rent due day must be a whole number between 1 and 31."})
    if not 1 <= value <= 31:
        raise ValidationError({"rent_due_day": "Rent due day must be between 1 and 31."})
    return value


def _validate_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned: Dict[str, Any] = {}

    if "apartment_number" in values:
        number = str(values["apartment_number"] or "").strip()
        if not APARTMENT_NUMBER_RE.match(number):
            errors["apartment_number"] = "Use 1-20 letters, digits, spaces or hyphens."
        cleaned["apartment_number"] = number
    if "location" in values:
        location = str(values["location"] or "").strip()
        if not 5 <= len(location) <= 200:
            errors["location"] = "Location must be between 5 and 200 characters."
        cleaned["location"] = location
    if "rent_amount" in values:
        try:
            amount = Decimal(str(values["rent_amount"]))
        except (InvalidOperation, TypeError):
            amount = None
        if amount is None or not amount.is_finite() or amount < 0:
            errors["rent_amount"] = "Rent amount must be a non-negative number."
        cleaned["rent_amount"] = amount
    if "rent_due_day" in values:
        try:
            cleaned["rent_due_day"] = validate_rent_due_day(values["rent_due_day"])
        except ValidationError as exc:
            errors.update(exc.errors)
    for field in ("square_footage", "bedrooms", "bathrooms"):
        if field in values:
            value = values[field]
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0):
                errors[field] = f"{field.replace('_', ' ').capitalize()} must be a non-negative number."
            cleaned[field] = value
    if "amenities" in values:
        amenities = values["amenities"]
        if amenities is not None and not isinstance(amenities, list):
            errors["amenities"] = "Amenities must be a list."
        cleaned["amenities"] = amenities

    if errors:
        raise ValidationError(errors)
    return cleaned


def create_apartment(session: Session, actor: User, values: Dict[str, Any]) -> Apartment:
    ensure_can_act(actor, Action.APARTMENT_CREATE)
    missing = {
        field: "This field is required."
        for field in ("apartment_number", "location", "rent_amount", "rent_due_day")
        if values.get(field) is None
    }
    if missing:
        raise ValidationError(missing)
    cleaned = _validate_fields(values)

    with atomic(session, DUPLICATE_NUMBER_MESSAGE):
        apartment = Apartment(owner_id=actor.id, status=ApartmentStatus.VACANT, **cleaned)
        session.add(apartment)
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="apartment.create",
            target_entity_type="Apartment",
            target_entity_id=str(apartment.id),
            after=apartment_snapshot(apartment),
        )
    logger.info("Apartment %s created by owner %s", apartment.id, actor.id)
    return apartment


def update_apartment(session: Session, apartment: Apartment, actor: User, changes: Dict[str, Any]) -> Apartment:
    """Apply a partial update.

    ``status`` is derived from occupancy: ``vacant`` releases any tenant,
    ``maintenance`` needs an empty apartment and ``occupied`` is only reached
    by assigning a tenant.
    """
    ensure_can_act(actor, Action.APARTMENT_UPDATE, apartment)
    if "owner_id" in changes and changes["owner_id"] != apartment.owner_id:
        raise ValidationError({"owner_id": "The owner of an apartment cannot be changed."})

    target_status = changes.get("status")
    if target_status is not None:
        if target_status not in ApartmentStatus.ALL:
            raise ValidationError({"status": f"Status must be one of: {', '.join(ApartmentStatus.ALL)}."})
        if target_status == ApartmentStatus.OCCUPIED and not apartment.is_occupied:
            raise ValidationError({"status": "Assign a tenant to mark an apartment occupied."})
        if target_status == ApartmentStatus.MAINTENANCE and apartment.is_occupied:
            raise Conflict("Remove the tenant before putting the apartment under maintenance.")

    cleaned = _validate_fields({key: value for key, value in changes.items() if key in UPDATABLE_FIELDS})
    before = apartment_snapshot(apartment)

    with atomic(session, DUPLICATE_NUMBER_MESSAGE):
        for field, value in cleaned.items():
            setattr(apartment, field, value)
        if target_status == ApartmentStatus.VACANT and apartment.is_occupied:
            session.flush()
            release_tenant(session, apartment, apartment.current_tenant_id)
        elif target_status in (ApartmentStatus.VACANT, ApartmentStatus.MAINTENANCE):
            apartment.status = target_status
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="apartment.update",
            target_entity_type="Apartment",
            target_entity_id=str(apartment.id),
            before=before,
            after={**{key: str(value) for key, value in cleaned.items()}, "status": target_status or before["status"]},
        )
    session.refresh(apartment)
    return apartment


def list_apartments(session: Session, actor: User) -> List[Apartment]:
    ensure_can_act(actor, Action.APARTMENT_READ)
    query = scope_apartments(session.query(Apartment), actor)
    return query.order_by(Apartment.apartment_number.asc(), Apartment.id.asc()).all()


def get_apartment(session: Session, actor: User, apartment_id: int) -> Apartment:
    """Fetch an apartment the actor may see; anything else is ``NotFound``."""
    apartment = session.get(Apartment, apartment_id)
    if apartment is None or not can_act(actor, Action.APARTMENT_READ, apartment):
        raise NotFound("Apartment not found.")
    return apartment


def get_apartment_for_update(session: Session, apartment_id: int) -> Apartment:
    apartment = session.get(Apartment, apartment_id)
    if apartment is None:
        raise NotFound("Apartment not found.")
    return apartment
