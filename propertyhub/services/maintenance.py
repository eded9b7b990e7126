from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session, selectinload

from ..constants import SCHEDULE_SLOTS, MaintenanceStatus, PhotoKind, UserRole
from ..core.errors import Conflict, Forbidden, InvalidDate, InvalidState, InvalidTransition, NotFound, ValidationError
from ..models.models import (
    MaintenanceMessage,
    MaintenanceNote,
    MaintenancePhoto,
    MaintenanceRequest,
    MessageReadReceipt,
    ServiceProvider,
    User,
    utcnow,
)
from .audit import audit_log
from .consistency import atomic, delete_stored_files, link_participant, store_photos, validate_photos
from .notifications import MaintenanceStatusEvent, NotificationDispatcher, create_notification, notification_center
from .policy import Action, can_view_request, ensure_can_act, scope_requests
from .storage import PhotoUpload, StorageService

logger = logging.getLogger(__name__)

MAINTENANCE_TRANSITIONS: Dict[str, set[str]] = {
    MaintenanceStatus.PENDING: {MaintenanceStatus.ASSIGNED, MaintenanceStatus.CANCELLED},
    MaintenanceStatus.ASSIGNED: {MaintenanceStatus.IN_PROGRESS, MaintenanceStatus.CANCELLED},
    MaintenanceStatus.IN_PROGRESS: {MaintenanceStatus.COMPLETED, MaintenanceStatus.CANCELLED},
    MaintenanceStatus.COMPLETED: set(),
    MaintenanceStatus.CANCELLED: set(),
}

BODY_MAX_LENGTH = 2000
STALE_REQUEST_MESSAGE = "The request was updated by someone else. Reload and try again."


def allowed_targets(status: str) -> set[str]:
    return set(MAINTENANCE_TRANSITIONS.get(status, set()))


def _request_snapshot(request: MaintenanceRequest) -> dict:
    return {
        "status": request.status,
        "service_provider_id": request.service_provider_id,
        "start_date": request.start_date,
        "completion_date": request.completion_date,
    }


def _authorize_edge(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    target_status: str,
    service_provider_id: Optional[int],
) -> Optional[User]:
    """Check that ``actor`` may take this particular edge.

    Returns the provider being assigned, if the edge assigns one.
    """
    if actor.role == UserRole.TENANT:
        raise Forbidden("Tenants cannot change the status of a maintenance request.")

    if target_status == MaintenanceStatus.CANCELLED:
        ensure_can_act(actor, Action.REQUEST_CANCEL, request)
        return None

    if actor.role == UserRole.OWNER:
        if target_status != MaintenanceStatus.ASSIGNED:
            raise Forbidden("Owners can only assign or cancel maintenance requests.")
        ensure_can_act(actor, Action.REQUEST_ASSIGN, request)
        if service_provider_id is None:
            raise ValidationError({"service_provider_id": "Choose a service provider to assign."})
        provider = session.get(User, service_provider_id)
        if not isinstance(provider, ServiceProvider) or not provider.is_active:
            raise ValidationError({"service_provider_id": "User is not an active service provider."})
        return provider

    if actor.role == UserRole.SERVICE_PROVIDER:
        if target_status == MaintenanceStatus.ASSIGNED:
            ensure_can_act(actor, Action.REQUEST_CLAIM, request)
            if service_provider_id not in (None, actor.id):
                raise Forbidden("Service providers can only claim requests for themselves.")
            return actor
        ensure_can_act(actor, Action.REQUEST_PROGRESS, request)
        return None

    raise Forbidden("Operation not permitted for your role.")


def _dispatch_status_change(
    dispatcher: Optional[NotificationDispatcher],
    session: Session,
    event: MaintenanceStatusEvent,
) -> None:
    if dispatcher is None:
        return
    try:
        dispatcher.dispatch_status_change(session, event)
    except Exception:
        logger.exception("Status notification for request %s failed", event.request_id)


def transition_request(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    target_status: str,
    *,
    service_provider_id: Optional[int] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> MaintenanceRequest:
    if target_status not in MaintenanceStatus.ALL:
        raise ValidationError({"status": f"Status must be one of: {', '.join(MaintenanceStatus.ALL)}."})
    if not can_view_request(actor, request):
        raise Forbidden("You cannot view this maintenance request.")

    current_status = request.status
    if target_status not in allowed_targets(current_status):
        raise InvalidTransition(current_status, target_status)

    provider = _authorize_edge(session, request, actor, target_status, service_provider_id)

    now = utcnow()
    if target_status == MaintenanceStatus.COMPLETED and request.start_date and now < request.start_date:
        raise InvalidDate()

    before = _request_snapshot(request)
    with atomic(session, STALE_REQUEST_MESSAGE):
        request.status = target_status
        if provider is not None:
            request.service_provider_id = provider.id
        if target_status == MaintenanceStatus.IN_PROGRESS and request.start_date is None:
            request.start_date = now
        if target_status == MaintenanceStatus.COMPLETED:
            request.completion_date = now
            if request.apartment is not None:
                request.apartment.last_maintenance_date = now
        session.flush()
        if provider is not None:
            link_participant(session, request, provider)
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.status",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request.id),
            before=before,
            after=_request_snapshot(request),
        )

    logger.info("Maintenance request %s: %s -> %s by user %s", request.id, current_status, target_status, actor.id)
    event = MaintenanceStatusEvent(
        request_id=request.id,
        title=request.title,
        old_status=current_status,
        new_status=target_status,
        recipients=request.participant_ids,
    )
    _dispatch_status_change(dispatcher, session, event)
    return request


def list_requests(session: Session, actor: User, status: Optional[str] = None) -> List[MaintenanceRequest]:
    ensure_can_act(actor, Action.REQUEST_READ)
    query = scope_requests(session.query(MaintenanceRequest), actor)
    if status:
        if actor.role == UserRole.SERVICE_PROVIDER and status == "active":
            query = query.filter(
                MaintenanceRequest.status == MaintenanceStatus.IN_PROGRESS,
                MaintenanceRequest.service_provider_id == actor.id,
            )
        elif status not in MaintenanceStatus.ALL:
            raise ValidationError({"status": f"Status must be one of: {', '.join(MaintenanceStatus.ALL)}."})
        else:
            query = query.filter(MaintenanceRequest.status == status)
    return (
        query.options(selectinload(MaintenanceRequest.attachments))
        .order_by(MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc())
        .all()
    )


def get_request(session: Session, actor: User, request_id: int) -> MaintenanceRequest:
    """Load a request the actor can see; hidden ones look absent."""
    request = session.get(MaintenanceRequest, request_id)
    if request is None or not can_view_request(actor, request):
        raise NotFound("Maintenance request not found.")
    return request


def load_request(session: Session, request_id: int) -> MaintenanceRequest:
    request = session.get(MaintenanceRequest, request_id)
    if request is None:
        raise NotFound("Maintenance request not found.")
    return request


def _clean_body(body: Optional[str]) -> str:
    cleaned = (body or "").strip()
    if not cleaned:
        raise ValidationError({"body": "Text is required."})
    if len(cleaned) > BODY_MAX_LENGTH:
        raise ValidationError({"body": f"Text cannot exceed {BODY_MAX_LENGTH} characters."})
    return cleaned


def add_message(session: Session, request: MaintenanceRequest, actor: User, body: str) -> MaintenanceMessage:
    ensure_can_act(actor, Action.REQUEST_MESSAGE, request)
    text = _clean_body(body)
    others = [user_id for user_id in request.participant_ids if user_id != actor.id]

    with atomic(session):
        message = MaintenanceMessage(request_id=request.id, sender_id=actor.id, body=text)
        session.add(message)
        session.flush()
        session.add(MessageReadReceipt(message_id=message.id, user_id=actor.id))
        notifications = create_notification(
            session,
            title=f"New message on {request.title}",
            message=f"{actor.full_name}: {text[:200]}",
            user_ids=others,
            category="maintenance",
            link_url=f"/maintenance/{request.id}",
        )
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.message",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request.id),
            after={"message_id": message.id},
        )

    for notification in notifications:
        notification_center.dispatch_created(notification)
    session.refresh(message)
    return message


def mark_messages_read(session: Session, request: MaintenanceRequest, actor: User) -> int:
    ensure_can_act(actor, Action.REQUEST_MESSAGE, request)
    unread = [message for message in request.messages if actor.id not in message.read_by]
    if not unread:
        return 0
    with atomic(session):
        for message in unread:
            session.add(MessageReadReceipt(message_id=message.id, user_id=actor.id))
    return len(unread)


def add_note(session: Session, request: MaintenanceRequest, actor: User, body: str) -> MaintenanceNote:
    ensure_can_act(actor, Action.REQUEST_NOTE, request)
    text = _clean_body(body)
    with atomic(session):
        note = MaintenanceNote(request_id=request.id, author_id=actor.id, body=text)
        session.add(note)
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.note",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request.id),
            after={"note_id": note.id},
        )
    return note


def add_completion_photos(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    photos: Sequence[PhotoUpload],
    storage: StorageService,
) -> List[MaintenancePhoto]:
    ensure_can_act(actor, Action.REQUEST_COMPLETION_PHOTOS, request)
    if not photos:
        raise ValidationError({"photos": "Attach at least one photo."})
    validate_photos(photos)

    saved_paths: List[str] = []
    try:
        with atomic(session, STALE_REQUEST_MESSAGE):
            created = store_photos(
                session,
                request,
                photos,
                kind=PhotoKind.COMPLETION,
                uploader=actor,
                storage=storage,
                saved_paths=saved_paths,
            )
            audit_log(
                db_session=session,
                actor_user_id=actor.id,
                action="maintenance.completion_photos",
                target_entity_type="MaintenanceRequest",
                target_entity_id=str(request.id),
                after={"photos": len(created)},
            )
    except Exception:
        if saved_paths:
            delete_stored_files(storage, saved_paths)
        raise
    return created


def _validate_visit(visit_date: date, slot: str, prefix: str) -> None:
    errors = {}
    if slot not in SCHEDULE_SLOTS:
        errors[f"{prefix}_slot"] = f"Slot must be one of: {', '.join(SCHEDULE_SLOTS)}."
    if visit_date < utcnow().date():
        errors[f"{prefix}_date"] = "Date cannot be in the past."
    if errors:
        raise ValidationError(errors)


def propose_schedule(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    preferred_date: date,
    preferred_slot: str,
) -> MaintenanceRequest:
    ensure_can_act(actor, Action.REQUEST_SCHEDULE_PROPOSE, request)
    _validate_visit(preferred_date, preferred_slot, "preferred")
    with atomic(session, STALE_REQUEST_MESSAGE):
        request.preferred_date = preferred_date
        request.preferred_slot = preferred_slot
        session.flush()
    return request


def confirm_schedule(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    confirmed_date: date,
    confirmed_slot: str,
) -> MaintenanceRequest:
    ensure_can_act(actor, Action.REQUEST_SCHEDULE_CONFIRM, request)
    if request.is_terminal:
        raise InvalidState(f"Cannot schedule a visit for a {request.status} request.")
    _validate_visit(confirmed_date, confirmed_slot, "confirmed")
    with atomic(session, STALE_REQUEST_MESSAGE):
        request.confirmed_date = confirmed_date
        request.confirmed_slot = confirmed_slot
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.schedule_confirm",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request.id),
            after={"confirmed_date": confirmed_date, "confirmed_slot": confirmed_slot},
        )
    return request


def rate_request(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    rating: int,
    comment: Optional[str] = None,
) -> MaintenanceRequest:
    ensure_can_act(actor, Action.REQUEST_RATE, request)
    if request.status != MaintenanceStatus.COMPLETED:
        raise InvalidState("Only completed requests can be rated.")
    if request.rating is not None:
        raise Conflict("This request has already been rated.")
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError({"rating": "Rating must be a whole number from 1 to 5."})

    with atomic(session, STALE_REQUEST_MESSAGE):
        request.rating = rating
        request.rating_comment = (comment or "").strip() or None
        request.rated_at = utcnow()
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.rate",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request.id),
            after={"rating": rating},
        )
    return request
