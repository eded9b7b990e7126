"""Cross-entity writes that must land together.

Apartments, tenants and maintenance requests point at each other from both
sides. Every function here validates first, then applies all of its writes in a
single transaction, so a reader never sees one side of a link without the other.
Occupancy changes use compare-and-swap updates: if another request got there
first the update matches no row and the caller gets ``Conflict``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..constants import (
    ALLOWED_PHOTO_CONTENT_PREFIX,
    MAINTENANCE_PRIORITIES,
    MAINTENANCE_TYPES,
    ApartmentStatus,
    MaintenanceStatus,
    PhotoKind,
    UserRole,
)
from ..core.errors import Conflict, InvalidState, NotFound, ValidationError
from ..core.timeouts import run_with_timeout
from ..models.models import (
    Apartment,
    MaintenancePhoto,
    MaintenanceRequest,
    RentPayment,
    Tenant,
    User,
    apartment_maintenance_history,
    user_maintenance_requests,
)
from .audit import audit_log
from .policy import Action, ensure_can_act
from .storage import PhotoUpload, StorageService, build_photo_path

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 2000


@contextmanager
def atomic(session: Session, conflict_message: Optional[str] = None) -> Iterator[Session]:
    """Commit on success; roll back on any error.

    Integrity violations and stale optimistic-lock versions both mean another
    writer won, and surface as ``Conflict``.
    """
    try:
        yield session
        session.commit()
    except (IntegrityError, StaleDataError) as exc:
        session.rollback()
        logger.info("Transaction rolled back on conflict: %s", exc.__class__.__name__)
        raise Conflict(conflict_message) from exc
    except Exception:
        session.rollback()
        raise


def apartment_snapshot(apartment: Apartment) -> dict:
    return {
        "apartment_number": apartment.apartment_number,
        "current_tenant_id": apartment.current_tenant_id,
        "status": apartment.status,
    }


def check_apartment_invariants(session: Session, apartment: Apartment) -> List[str]:
    """Return every broken link around ``apartment``; empty when consistent."""
    apartments = Apartment.__table__
    users = User.__table__
    row = session.execute(
        select(apartments.c.owner_id, apartments.c.current_tenant_id, apartments.c.status).where(
            apartments.c.id == apartment.id
        )
    ).one_or_none()
    if row is None:
        return [f"apartment {apartment.id} does not exist"]

    owner_id, tenant_id, status = row
    violations: List[str] = []

    owner_role = session.execute(select(users.c.role).where(users.c.id == owner_id)).scalar_one_or_none()
    if owner_role != UserRole.OWNER:
        violations.append(f"owner {owner_id} is not an owner account")

    if tenant_id is not None:
        tenant_row = session.execute(
            select(users.c.role, users.c.current_apartment_id).where(users.c.id == tenant_id)
        ).one_or_none()
        if tenant_row is None or tenant_row.role != UserRole.TENANT:
            violations.append(f"current tenant {tenant_id} is not a tenant account")
        elif tenant_row.current_apartment_id != apartment.id:
            violations.append(f"tenant {tenant_id} does not point back to apartment {apartment.id}")
        if status != ApartmentStatus.OCCUPIED:
            violations.append(f"apartment has a tenant but status is {status}")
    elif status == ApartmentStatus.OCCUPIED:
        violations.append("apartment is marked occupied without a tenant")

    stray_query = select(users.c.id).where(users.c.current_apartment_id == apartment.id)
    if tenant_id is not None:
        stray_query = stray_query.where(users.c.id != tenant_id)
    stray_tenants = session.execute(stray_query).scalars().all()
    for stray_id in stray_tenants:
        violations.append(f"tenant {stray_id} points at apartment {apartment.id} but is not its tenant")

    request_ids = set(
        session.execute(
            select(MaintenanceRequest.id).where(MaintenanceRequest.apartment_id == apartment.id)
        ).scalars()
    )
    history_ids = set(
        session.execute(
            select(apartment_maintenance_history.c.request_id).where(
                apartment_maintenance_history.c.apartment_id == apartment.id
            )
        ).scalars()
    )
    for missing in sorted(request_ids - history_ids):
        violations.append(f"request {missing} is missing from the maintenance history")

    return violations


def _log_invariants(session: Session, apartment: Apartment) -> None:
    violations = check_apartment_invariants(session, apartment)
    if violations:
        logger.error("Apartment %s is inconsistent: %s", apartment.id, "; ".join(violations))


def release_tenant(session: Session, apartment: Apartment, tenant_id: int, status: str = ApartmentStatus.VACANT) -> None:
    released = session.execute(
        update(Apartment)
        .where(Apartment.id == apartment.id, Apartment.current_tenant_id == tenant_id)
        .values(current_tenant_id=None, status=status)
    ).rowcount
    if released != 1:
        raise Conflict("The apartment's tenant changed while removing them. Please retry.")
    cleared = session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.current_apartment_id == apartment.id)
        .values(current_apartment_id=None)
    ).rowcount
    if cleared != 1:
        logger.warning("Tenant %s did not point back to apartment %s on release", tenant_id, apartment.id)


def assign_tenant(
    session: Session,
    apartment: Apartment,
    tenant: User,
    actor: User,
    *,
    lease_start: Optional[date] = None,
    lease_end: Optional[date] = None,
) -> Apartment:
    ensure_can_act(actor, Action.APARTMENT_ASSIGN_TENANT, apartment)
    if not isinstance(tenant, Tenant):
        raise ValidationError({"tenant_id": "User is not a tenant."})
    if not tenant.is_active:
        raise ValidationError({"tenant_id": "Tenant account is inactive."})
    if apartment.is_occupied:
        raise Conflict("Apartment already has a tenant.")
    if tenant.current_apartment_id is not None:
        raise Conflict("Tenant already occupies another apartment.")

    before = apartment_snapshot(apartment)
    with atomic(session, "Apartment or tenant was assigned concurrently."):
        claimed = session.execute(
            update(Apartment)
            .where(Apartment.id == apartment.id, Apartment.current_tenant_id.is_(None))
            .values(current_tenant_id=tenant.id, status=ApartmentStatus.OCCUPIED)
        ).rowcount
        if claimed != 1:
            raise Conflict("Apartment already has a tenant.")
        moved = session.execute(
            update(Tenant)
            .where(Tenant.id == tenant.id, Tenant.current_apartment_id.is_(None))
            .values(current_apartment_id=apartment.id, lease_start=lease_start, lease_end=lease_end)
        ).rowcount
        if moved != 1:
            raise Conflict("Tenant already occupies another apartment.")
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="apartment.assign_tenant",
            target_entity_type="Apartment",
            target_entity_id=str(apartment.id),
            before=before,
            after={"current_tenant_id": tenant.id, "status": ApartmentStatus.OCCUPIED},
        )

    session.refresh(apartment)
    _log_invariants(session, apartment)
    logger.info("Tenant %s assigned to apartment %s", tenant.id, apartment.id)
    return apartment


def remove_tenant(session: Session, apartment: Apartment, actor: User) -> Apartment:
    ensure_can_act(actor, Action.APARTMENT_REMOVE_TENANT, apartment)
    tenant_id = apartment.current_tenant_id
    if tenant_id is None:
        raise Conflict("Apartment has no tenant to remove.")

    before = apartment_snapshot(apartment)
    with atomic(session):
        release_tenant(session, apartment, tenant_id)
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="apartment.remove_tenant",
            target_entity_type="Apartment",
            target_entity_id=str(apartment.id),
            before=before,
            after={"current_tenant_id": None, "status": ApartmentStatus.VACANT},
        )

    session.refresh(apartment)
    _log_invariants(session, apartment)
    logger.info("Tenant %s removed from apartment %s", tenant_id, apartment.id)
    return apartment


def delete_apartment(session: Session, apartment: Apartment, actor: User) -> None:
    ensure_can_act(actor, Action.APARTMENT_DELETE, apartment)
    if apartment.is_occupied:
        raise Conflict("Remove the tenant before deleting the apartment.")

    apartment_id = apartment.id
    before = apartment_snapshot(apartment)
    with atomic(session):
        session.execute(
            delete(apartment_maintenance_history).where(apartment_maintenance_history.c.apartment_id == apartment_id)
        )
        session.execute(
            update(MaintenanceRequest.__table__)
            .where(MaintenanceRequest.__table__.c.apartment_id == apartment_id)
            .values(apartment_id=None)
        )
        session.execute(
            update(RentPayment.__table__)
            .where(RentPayment.__table__.c.apartment_id == apartment_id)
            .values(apartment_id=None)
        )
        deleted = session.execute(
            delete(Apartment.__table__).where(
                Apartment.__table__.c.id == apartment_id,
                Apartment.__table__.c.current_tenant_id.is_(None),
            )
        ).rowcount
        if deleted != 1:
            raise Conflict("Apartment was changed while deleting it. Please retry.")
        session.expunge(apartment)
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="apartment.delete",
            target_entity_type="Apartment",
            target_entity_id=str(apartment_id),
            before=before,
        )
    logger.info("Apartment %s deleted", apartment_id)


def _link_user(session: Session, request_id: int, user_id: int) -> bool:
    exists = session.execute(
        select(user_maintenance_requests.c.user_id).where(
            user_maintenance_requests.c.user_id == user_id,
            user_maintenance_requests.c.request_id == request_id,
        )
    ).first()
    if exists:
        return False
    session.execute(insert(user_maintenance_requests).values(user_id=user_id, request_id=request_id))
    return True


def link_participant(session: Session, request: MaintenanceRequest, user: User) -> bool:
    """Add ``request`` to ``user``'s request set; returns False if already there."""
    linked = _link_user(session, request.id, user.id)
    if linked:
        session.expire(user, ["maintenance_requests"])
    return linked


def photo_too_large(filename: Optional[str], field: str = "photos") -> ValidationError:
    limit_mb = settings.max_photo_bytes // (1024 * 1024)
    return ValidationError({field: f"{filename or 'File'} exceeds the {limit_mb} MB limit."})


def validate_photos(photos: Sequence[PhotoUpload], field: str = "photos") -> None:
    if len(photos) > settings.max_photos_per_upload:
        raise ValidationError({field: f"At most {settings.max_photos_per_upload} photos can be uploaded at once."})
    for photo in photos:
        if not (photo.content_type or "").startswith(ALLOWED_PHOTO_CONTENT_PREFIX):
            raise ValidationError({field: f"{photo.filename or 'File'} is not an image."})
        if photo.size > settings.max_photo_bytes:
            raise photo_too_large(photo.filename, field)


def store_photos(
    session: Session,
    request: MaintenanceRequest,
    photos: Iterable[PhotoUpload],
    *,
    kind: str,
    uploader: User,
    storage: StorageService,
    saved_paths: List[str],
) -> List[MaintenancePhoto]:
    """Write each photo to the file store and stage its metadata row.

    ``saved_paths`` collects what reached the store so a failed transaction
    can clean up after itself.
    """
    created: List[MaintenancePhoto] = []
    for photo in photos:
        stored = run_with_timeout(
            storage.save_file,
            settings.storage_timeout_seconds,
            build_photo_path(request.id, kind, photo.filename),
            photo.content,
            photo.content_type,
            description="photo upload",
        )
        saved_paths.append(stored.relative_path)
        attachment = MaintenancePhoto(
            request_id=request.id,
            kind=kind,
            path=stored.relative_path,
            original_filename=photo.filename or stored.relative_path.rsplit("/", 1)[-1],
            content_type=photo.content_type,
            file_size=photo.size,
            uploaded_by_user_id=uploader.id,
        )
        request.attachments.append(attachment)
        created.append(attachment)
    session.flush()
    return created


def delete_stored_files(storage: StorageService, paths: Iterable[str]) -> List[str]:
    """Best-effort removal; returns the paths that could not be deleted."""
    failed: List[str] = []
    for path in paths:
        try:
            run_with_timeout(
                storage.delete_file,
                settings.storage_timeout_seconds,
                path,
                description=f"file deletion ({path})",
            )
        except Exception:
            logger.exception("Failed to delete stored file %s", path)
            failed.append(path)
    return failed


def _validate_request_fields(title: str, description: str, request_type: str, priority: str) -> None:
    errors = {}
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        errors["title"] = "Title is required."
    elif len(cleaned_title) > TITLE_MAX_LENGTH:
        errors["title"] = f"Title cannot exceed {TITLE_MAX_LENGTH} characters."
    cleaned_description = (description or "").strip()
    if not cleaned_description:
        errors["description"] = "Description is required."
    elif len(cleaned_description) > DESCRIPTION_MAX_LENGTH:
        errors["description"] = f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters."
    if request_type not in MAINTENANCE_TYPES:
        errors["type"] = f"Type must be one of: {', '.join(MAINTENANCE_TYPES)}."
    if priority not in MAINTENANCE_PRIORITIES:
        errors["priority"] = f"Priority must be one of: {', '.join(MAINTENANCE_PRIORITIES)}."
    if errors:
        raise ValidationError(errors)


def create_request(
    session: Session,
    tenant: User,
    apartment_id: int,
    *,
    title: str,
    description: str,
    request_type: str,
    priority: str = "medium",
    status: str = MaintenanceStatus.PENDING,
    photos: Sequence[PhotoUpload] = (),
    storage: Optional[StorageService] = None,
) -> MaintenanceRequest:
    apartment = session.get(Apartment, apartment_id)
    if apartment is None:
        raise NotFound("Apartment not found.")
    ensure_can_act(tenant, Action.REQUEST_CREATE, apartment)
    if status != MaintenanceStatus.PENDING:
        raise InvalidState(f"New maintenance requests must start as pending, not {status}.")
    _validate_request_fields(title, description, request_type, priority)
    validate_photos(photos)
    if photos and storage is None:
        raise ValueError("A storage service is required to attach photos.")

    saved_paths: List[str] = []
    try:
        with atomic(session):
            request = MaintenanceRequest(
                title=title.strip(),
                description=description.strip(),
                request_type=request_type,
                priority=priority,
                status=MaintenanceStatus.PENDING,
                apartment_id=apartment.id,
                tenant_id=tenant.id,
                owner_id=apartment.owner_id,
            )
            session.add(request)
            session.flush()
            if photos:
                store_photos(
                    session,
                    request,
                    photos,
                    kind=PhotoKind.REQUEST,
                    uploader=tenant,
                    storage=storage,
                    saved_paths=saved_paths,
                )
            session.execute(
                insert(apartment_maintenance_history).values(apartment_id=apartment.id, request_id=request.id)
            )
            for user_id in request.participant_ids:
                _link_user(session, request.id, user_id)
            audit_log(
                db_session=session,
                actor_user_id=tenant.id,
                action="maintenance.create",
                target_entity_type="MaintenanceRequest",
                target_entity_id=str(request.id),
                after={"title": request.title, "apartment_id": apartment.id, "photos": len(saved_paths)},
            )
    except Exception:
        if saved_paths and storage is not None:
            delete_stored_files(storage, saved_paths)
        raise

    logger.info("Maintenance request %s created for apartment %s", request.id, apartment.id)
    return request


def delete_request(
    session: Session,
    request: MaintenanceRequest,
    actor: User,
    storage: StorageService,
) -> List[str]:
    """Delete a request and its links, then clean up its files.

    Returns the file paths whose deletion failed; the request itself is gone
    either way.
    """
    ensure_can_act(actor, Action.REQUEST_DELETE, request)
    request_id = request.id
    paths = [attachment.path for attachment in request.attachments]
    before = {"title": request.title, "status": request.status, "apartment_id": request.apartment_id}

    with atomic(session, "The request was changed while deleting it. Please retry."):
        session.execute(
            delete(apartment_maintenance_history).where(apartment_maintenance_history.c.request_id == request_id)
        )
        session.execute(delete(user_maintenance_requests).where(user_maintenance_requests.c.request_id == request_id))
        session.delete(request)
        session.flush()
        audit_log(
            db_session=session,
            actor_user_id=actor.id,
            action="maintenance.delete",
            target_entity_type="MaintenanceRequest",
            target_entity_id=str(request_id),
            before=before,
        )

    failed = delete_stored_files(storage, paths)
    if failed:
        logger.warning("Request %s deleted; %d of %d files could not be removed", request_id, len(failed), len(paths))
    return failed
