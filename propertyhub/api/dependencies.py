from typing import List

from fastapi import UploadFile

from ..auth.jwt import get_current_user, get_db
from ..config import settings
from ..services.consistency import photo_too_large
from ..services.notifications import NotificationDispatcher, notification_dispatcher
from ..services.storage import PhotoUpload, StorageService, storage_service

__all__ = [
    "get_current_user",
    "get_db",
    "get_dispatcher",
    "get_storage",
    "read_photo_uploads",
]


def get_storage() -> StorageService:
    return storage_service


def get_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher


async def read_photo_uploads(files: List[UploadFile]) -> List[PhotoUpload]:
    """Buffer uploaded photos, refusing oversize files before reading them whole."""
    limit = settings.max_photo_bytes
    uploads: List[PhotoUpload] = []
    for upload in files:
        if not upload.filename and not upload.size:
            continue
        if upload.size is not None and upload.size > limit:
            raise photo_too_large(upload.filename)
        # The declared size can be missing; never buffer more than one byte past the limit.
        content = await upload.read(limit + 1)
        if len(content) > limit:
            raise photo_too_large(upload.filename)
        uploads.append(PhotoUpload(filename=upload.filename or "", content_type=upload.content_type, content=content))
    return uploads
