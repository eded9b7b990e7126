"""Who may do what, on which entity.

Two layers: ``ROLE_PERMISSIONS`` says which actions a role may ever attempt,
and the instance rules below check ownership or assignment on the concrete
apartment, request or payment being touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, false, or_, select
from sqlalchemy.orm import Query, Session, object_session

from ..constants import MaintenanceStatus, UserRole
from ..core.errors import Forbidden
from ..models.models import Apartment, MaintenanceRequest, RentPayment, User


class Action:
    APARTMENT_CREATE = "apartments:create"
    APARTMENT_READ = "apartments:read"
    APARTMENT_UPDATE = "apartments:update"
    APARTMENT_DELETE = "apartments:delete"
    APARTMENT_ASSIGN_TENANT = "apartments:assign_tenant"
    APARTMENT_REMOVE_TENANT = "apartments:remove_tenant"

    REQUEST_CREATE = "maintenance:create"
    REQUEST_READ = "maintenance:read"
    REQUEST_ASSIGN = "maintenance:assign"
    REQUEST_CLAIM = "maintenance:claim"
    REQUEST_PROGRESS = "maintenance:progress"
    REQUEST_CANCEL = "maintenance:cancel"
    REQUEST_DELETE = "maintenance:delete"
    REQUEST_MESSAGE = "maintenance:message"
    REQUEST_NOTE = "maintenance:note"
    REQUEST_COMPLETION_PHOTOS = "maintenance:completion_photos"
    REQUEST_SCHEDULE_PROPOSE = "maintenance:schedule_propose"
    REQUEST_SCHEDULE_CONFIRM = "maintenance:schedule_confirm"
    REQUEST_RATE = "maintenance:rate"

    RENT_CREATE = "rent:create"
    RENT_READ = "rent:read"
    RENT_MARK_PAID = "rent:mark_paid"
    RENT_REMIND = "rent:remind"

    USER_DIRECTORY = "users:directory"


ROLE_PERMISSIONS: Dict[str, frozenset] = {
    UserRole.OWNER: frozenset(
        {
            Action.APARTMENT_CREATE,
            Action.APARTMENT_READ,
            Action.APARTMENT_UPDATE,
            Action.APARTMENT_DELETE,
            Action.APARTMENT_ASSIGN_TENANT,
            Action.APARTMENT_REMOVE_TENANT,
            Action.REQUEST_READ,
            Action.REQUEST_ASSIGN,
            Action.REQUEST_CANCEL,
            Action.REQUEST_DELETE,
            Action.REQUEST_MESSAGE,
            Action.REQUEST_NOTE,
            Action.REQUEST_SCHEDULE_CONFIRM,
            Action.RENT_CREATE,
            Action.RENT_READ,
            Action.RENT_MARK_PAID,
            Action.RENT_REMIND,
            Action.USER_DIRECTORY,
        }
    ),
    UserRole.TENANT: frozenset(
        {
            Action.APARTMENT_READ,
            Action.REQUEST_CREATE,
            Action.REQUEST_READ,
            Action.REQUEST_DELETE,
            Action.REQUEST_MESSAGE,
            Action.REQUEST_NOTE,
            Action.REQUEST_SCHEDULE_PROPOSE,
            Action.REQUEST_RATE,
            Action.RENT_CREATE,
            Action.RENT_READ,
        }
    ),
    UserRole.SERVICE_PROVIDER: frozenset(
        {
            Action.APARTMENT_READ,
            Action.REQUEST_READ,
            Action.REQUEST_CLAIM,
            Action.REQUEST_PROGRESS,
            Action.REQUEST_MESSAGE,
            Action.REQUEST_NOTE,
            Action.REQUEST_COMPLETION_PHOTOS,
            Action.REQUEST_SCHEDULE_CONFIRM,
        }
    ),
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.allowed


def _decide(condition: bool, reason: str) -> Decision:
    return Decision.allow() if condition else Decision.deny(reason)


def is_participant(actor: User, request: MaintenanceRequest) -> bool:
    return actor.id in request.participant_ids


def is_open_pool_request(request: MaintenanceRequest) -> bool:
    return request.service_provider_id is None and request.status == MaintenanceStatus.PENDING


def can_view_request(actor: User, request: MaintenanceRequest) -> bool:
    if is_participant(actor, request):
        return True
    return actor.role == UserRole.SERVICE_PROVIDER and is_open_pool_request(request)


def _provider_serves_apartment(actor: User, apartment: Apartment) -> bool:
    session = object_session(apartment)
    if session is None:
        return False
    match = session.execute(
        select(MaintenanceRequest.id)
        .where(
            MaintenanceRequest.apartment_id == apartment.id,
            MaintenanceRequest.service_provider_id == actor.id,
        )
        .limit(1)
    ).first()
    return match is not None


def _apartment_rule(actor: User, action: str, apartment: Apartment) -> Decision:
    if actor.role == UserRole.OWNER:
        return _decide(apartment.owner_id == actor.id, "You do not own this apartment.")
    if action == Action.REQUEST_CREATE or action == Action.RENT_CREATE:
        occupies = apartment.current_tenant_id == actor.id and getattr(actor, "current_apartment_id", None) == apartment.id
        return _decide(occupies, "You can only act on the apartment you currently rent.")
    if actor.role == UserRole.TENANT:
        return _decide(apartment.current_tenant_id == actor.id, "You can only view the apartment you currently rent.")
    return _decide(
        _provider_serves_apartment(actor, apartment),
        "You can only view apartments with maintenance requests assigned to you.",
    )


def _request_rule(actor: User, action: str, request: MaintenanceRequest) -> Decision:
    if action == Action.REQUEST_READ:
        return _decide(can_view_request(actor, request), "You cannot view this maintenance request.")
    if action in (Action.REQUEST_MESSAGE, Action.REQUEST_NOTE):
        return _decide(is_participant(actor, request), "Only participants of this request can comment on it.")
    if action in (Action.REQUEST_ASSIGN, Action.REQUEST_CANCEL):
        return _decide(request.owner_id == actor.id, "Only the apartment owner can do this.")
    if action == Action.REQUEST_CLAIM:
        return _decide(is_open_pool_request(request), "This request is not open for claiming.")
    if action in (Action.REQUEST_PROGRESS, Action.REQUEST_COMPLETION_PHOTOS):
        return _decide(request.service_provider_id == actor.id, "This request is not assigned to you.")
    if action == Action.REQUEST_DELETE:
        if request.owner_id == actor.id:
            return Decision.allow()
        return _decide(
            request.tenant_id == actor.id and request.status == MaintenanceStatus.PENDING,
            "Tenants can only delete their own pending requests.",
        )
    if action == Action.REQUEST_SCHEDULE_PROPOSE or action == Action.REQUEST_RATE:
        return _decide(request.tenant_id == actor.id, "Only the tenant who raised this request can do this.")
    if action == Action.REQUEST_SCHEDULE_CONFIRM:
        return _decide(
            actor.id in (request.owner_id, request.service_provider_id),
            "Only the owner or the assigned provider can confirm a visit.",
        )
    return Decision.deny("Unsupported action for a maintenance request.")


def _payment_rule(actor: User, action: str, payment: RentPayment) -> Decision:
    if actor.role == UserRole.TENANT:
        return _decide(
            action == Action.RENT_READ and payment.tenant_id == actor.id,
            "You can only view your own rent payments.",
        )
    owns = payment.apartment is not None and payment.apartment.owner_id == actor.id
    return _decide(owns, "You do not own the apartment for this payment.")


_INSTANCE_RULES: Dict[type, Callable[[User, str, Any], Decision]] = {
    Apartment: _apartment_rule,
    MaintenanceRequest: _request_rule,
    RentPayment: _payment_rule,
}


def can_act(actor: Optional[User], action: str, entity: Any = None) -> Decision:
    if actor is None:
        return Decision.deny("Authentication required.")
    if not actor.is_active:
        return Decision.deny("This account is inactive.")
    if action not in ROLE_PERMISSIONS.get(actor.role, frozenset()):
        return Decision.deny("Operation not permitted for your role.")
    if entity is None:
        return Decision.allow()
    for entity_type, rule in _INSTANCE_RULES.items():
        if isinstance(entity, entity_type):
            return rule(actor, action, entity)
    return Decision.deny("Unsupported entity.")


def ensure_can_act(actor: Optional[User], action: str, entity: Any = None) -> None:
    decision = can_act(actor, action, entity)
    if not decision:
        raise Forbidden(decision.reason)


def scope_apartments(query: Query, actor: User) -> Query:
    if actor.role == UserRole.OWNER:
        return query.filter(Apartment.owner_id == actor.id)
    if actor.role == UserRole.TENANT:
        return query.filter(Apartment.current_tenant_id == actor.id)
    if actor.role == UserRole.SERVICE_PROVIDER:
        assigned = select(MaintenanceRequest.apartment_id).where(
            MaintenanceRequest.service_provider_id == actor.id,
            MaintenanceRequest.apartment_id.is_not(None),
        )
        return query.filter(Apartment.id.in_(assigned))
    return query.filter(false())


def scope_requests(query: Query, actor: User) -> Query:
    if actor.role == UserRole.OWNER:
        return query.filter(MaintenanceRequest.owner_id == actor.id)
    if actor.role == UserRole.TENANT:
        return query.filter(MaintenanceRequest.tenant_id == actor.id)
    if actor.role == UserRole.SERVICE_PROVIDER:
        return query.filter(
            or_(
                MaintenanceRequest.service_provider_id == actor.id,
                and_(
                    MaintenanceRequest.service_provider_id.is_(None),
                    MaintenanceRequest.status == MaintenanceStatus.PENDING,
                ),
            )
        )
    return query.filter(false())


def scope_payments(query: Query, actor: User) -> Query:
    if actor.role == UserRole.TENANT:
        return query.filter(RentPayment.tenant_id == actor.id)
    if actor.role == UserRole.OWNER:
        owned = select(Apartment.id).where(Apartment.owner_id == actor.id)
        return query.filter(RentPayment.apartment_id.in_(owned))
    return query.filter(false())


def scope_message(session: Session, model: type, visible_count: int, noun: str) -> str:
    """Explain an empty list without changing the response shape."""
    if visible_count:
        return f"{visible_count} {noun} found."
    if session.query(model.id).first() is None:
        return f"No {noun} yet."
    return f"No {noun} are visible to your account."
