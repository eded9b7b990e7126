from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db, get_dispatcher, get_storage, read_photo_uploads
from ..core.errors import ValidationError
from ..models.models import MaintenanceMessage, MaintenanceNote, MaintenancePhoto, MaintenanceRequest, User
from ..schemas.schemas import (
    ListResponse,
    MaintenanceMessageCreate,
    MaintenanceMessageRead,
    MaintenanceNoteCreate,
    MaintenanceNoteRead,
    MaintenancePhotoRead,
    MaintenanceRequestRead,
    MaintenanceStatusUpdate,
    RatingCreate,
    ScheduleConfirmation,
    ScheduleProposal,
)
from ..services import maintenance as maintenance_service
from ..services.consistency import create_request, delete_request
from ..services.notifications import NotificationDispatcher
from ..services.policy import scope_message
from ..services.storage import PhotoUpload, StorageService

router = APIRouter()


@router.post("", response_model=MaintenanceRequestRead, status_code=status.HTTP_201_CREATED)
async def create_maintenance_request(
    title: str = Form(...),
    description: str = Form(...),
    request_type: str = Form(..., alias="type"),
    priority: str = Form("medium"),
    apartment_id: Optional[int] = Form(None),
    photos: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
) -> MaintenanceRequest:
    target_apartment = apartment_id or getattr(actor, "current_apartment_id", None)
    if target_apartment is None:
        raise ValidationError({"apartment_id": "You are not assigned to an apartment."})
    uploads = await read_photo_uploads(photos or [])
    return await run_in_threadpool(
        create_request,
        db,
        actor,
        target_apartment,
        title=title,
        description=description,
        request_type=request_type,
        priority=priority,
        photos=uploads,
        storage=storage,
    )


@router.get("", response_model=ListResponse[MaintenanceRequestRead])
def list_maintenance_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    requests = maintenance_service.list_requests(db, actor, status_filter)
    return {
        "items": requests,
        "count": len(requests),
        "message": scope_message(db, MaintenanceRequest, len(requests), "maintenance requests"),
    }


@router.get("/{request_id}", response_model=MaintenanceRequestRead)
def get_maintenance_request(
    request_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceRequest:
    return maintenance_service.get_request(db, actor, request_id)


@router.patch("/{request_id}/status", response_model=MaintenanceRequestRead)
def update_maintenance_status(
    request_id: int,
    payload: MaintenanceStatusUpdate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> MaintenanceRequest:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.transition_request(
        db,
        request,
        actor,
        payload.status,
        service_provider_id=payload.service_provider_id,
        dispatcher=dispatcher,
    )


@router.post(
    "/{request_id}/messages",
    response_model=MaintenanceMessageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_maintenance_message(
    request_id: int,
    payload: MaintenanceMessageCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceMessage:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.add_message(db, request, actor, payload.body)


@router.post("/{request_id}/messages/read", response_model=dict)
def mark_maintenance_messages_read(
    request_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> dict:
    request = maintenance_service.load_request(db, request_id)
    return {"updated": maintenance_service.mark_messages_read(db, request, actor)}


@router.post("/{request_id}/notes", response_model=MaintenanceNoteRead, status_code=status.HTTP_201_CREATED)
def add_maintenance_note(
    request_id: int,
    payload: MaintenanceNoteCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceNote:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.add_note(db, request, actor, payload.body)


def _store_completion_photos(
    db: Session, request_id: int, actor: User, uploads: List[PhotoUpload], storage: StorageService
) -> List[MaintenancePhoto]:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.add_completion_photos(db, request, actor, uploads, storage)


@router.post(
    "/{request_id}/completion-photos",
    response_model=List[MaintenancePhotoRead],
    status_code=status.HTTP_201_CREATED,
)
async def add_completion_photos(
    request_id: int,
    photos: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
) -> List[MaintenancePhoto]:
    uploads = await read_photo_uploads(photos)
    return await run_in_threadpool(_store_completion_photos, db, request_id, actor, uploads, storage)


@router.post("/{request_id}/schedule", response_model=MaintenanceRequestRead)
def propose_visit(
    request_id: int,
    payload: ScheduleProposal,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceRequest:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.propose_schedule(db, request, actor, payload.preferred_date, payload.preferred_slot)


@router.post("/{request_id}/schedule/confirm", response_model=MaintenanceRequestRead)
def confirm_visit(
    request_id: int,
    payload: ScheduleConfirmation,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceRequest:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.confirm_schedule(db, request, actor, payload.confirmed_date, payload.confirmed_slot)


@router.post("/{request_id}/rating", response_model=MaintenanceRequestRead)
def rate_maintenance_request(
    request_id: int,
    payload: RatingCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
) -> MaintenanceRequest:
    request = maintenance_service.load_request(db, request_id)
    return maintenance_service.rate_request(db, request, actor, payload.rating, payload.comment)


@router.delete("/{request_id}", response_model=dict)
def delete_maintenance_request(
    request_id: int,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
) -> dict:
    request = maintenance_service.load_request(db, request_id)
    failed = delete_request(db, request, actor, storage)
    return {"deleted": request_id, "failed_files": failed}
