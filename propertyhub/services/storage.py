from __future__ import annotations

import mimetypes
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from ..config import settings
from ..core.errors import NotFound


class StorageBackend(str, Enum):
    LOCAL = "local"
    S3 = "s3"


@dataclass
class StoredFile:
    relative_path: str
    public_path: str
    local_path: Optional[str] = None


@dataclass
class RetrievedFile:
    content: bytes
    content_type: str


@dataclass
class PhotoUpload:
    """An uploaded image held in memory until it is validated and stored."""

    filename: str
    content_type: Optional[str]
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def build_photo_path(request_id: int, kind: str, filename: str) -> str:
    suffix = Path(filename or "").suffix.lower() or ""
    return f"maintenance/{request_id}/{kind}_{secrets.token_hex(8)}{suffix}"


class StorageService:
    def __init__(self, backend: Optional[str] = None, upload_root: Optional[Path] = None) -> None:
        backend_name = (backend or settings.file_storage_backend or "local").lower()
        if backend_name.upper() not in StorageBackend.__members__:
            backend_name = "local"
        self.backend = StorageBackend[backend_name.upper()]
        self.upload_root = upload_root or settings.uploads_root_path
        self.public_prefix = settings.uploads_public_prefix.strip("/")
        self._s3_client = None
        if self.backend == StorageBackend.S3:
            self._configure_s3_client()

    def _configure_s3_client(self) -> None:
        try:
            import boto3
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for the S3 storage backend; install the 's3' extra.") from exc

        if not settings.s3_bucket:
            raise RuntimeError("S3_BUCKET must be set when using the S3 storage backend.")

        session_kwargs = {
            "region_name": settings.s3_region,
            "aws_access_key_id": settings.s3_access_key,
            "aws_secret_access_key": settings.s3_secret_key,
            "endpoint_url": settings.s3_endpoint_url,
        }
        self._s3_client = boto3.client("s3", **{k: v for k, v in session_kwargs.items() if v})

    def _normalize_relative(self, relative_path: str) -> str:
        relative = relative_path.strip().lstrip("/")
        if relative.startswith(self.public_prefix + "/"):
            relative = relative.split("/", 1)[1]
        return relative

    def _build_public_path(self, relative_path: str) -> str:
        if self.public_prefix.startswith("http"):
            return f"{self.public_prefix.rstrip('/')}/{relative_path}"
        return f"{self.public_prefix}/{relative_path}".lstrip("/")

    def _local_target(self, relative: str) -> Path:
        root = Path(self.upload_root).resolve()
        target = (root / relative).resolve()
        if root not in target.parents:
            raise NotFound("File not found.")
        return target

    def save_file(self, relative_path: str, content: bytes, content_type: Optional[str] = None) -> StoredFile:
        relative = self._normalize_relative(relative_path)
        guessed_type = content_type or mimetypes.guess_type(relative)[0] or "application/octet-stream"
        public_path = self._build_public_path(relative)

        if self.backend == StorageBackend.LOCAL:
            target_path = self._local_target(relative)
            target_path.parent.mkdir(parents=True, exist_ok=True)
            target_path.write_bytes(content)
            return StoredFile(relative_path=relative, public_path=public_path, local_path=str(target_path))

        assert self._s3_client is not None
        self._s3_client.put_object(Bucket=settings.s3_bucket, Key=relative, Body=content, ContentType=guessed_type)
        return StoredFile(relative_path=relative, public_path=public_path, local_path=None)

    def delete_file(self, relative_or_public_path: str) -> None:
        relative = self._normalize_relative(relative_or_public_path)
        if not relative:
            return
        if self.backend == StorageBackend.LOCAL:
            target = self._local_target(relative)
            if target.exists():
                target.unlink()
            return

        assert self._s3_client is not None
        self._s3_client.delete_object(Bucket=settings.s3_bucket, Key=relative)

    def retrieve_file(self, relative_or_public_path: str) -> RetrievedFile:
        relative = self._normalize_relative(relative_or_public_path)
        if self.backend == StorageBackend.LOCAL:
            target = self._local_target(relative)
            if not target.exists():
                raise NotFound("File not found.")
            content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
            return RetrievedFile(content=target.read_bytes(), content_type=content_type)

        assert self._s3_client is not None
        try:
            obj = self._s3_client.get_object(Bucket=settings.s3_bucket, Key=relative)
        except self._s3_client.exceptions.NoSuchKey:  # type: ignore[attr-defined]
            raise NotFound("File not found.") from None
        content_type = obj.get("ContentType") or mimetypes.guess_type(relative)[0] or "application/octet-stream"
        return RetrievedFile(content=obj["Body"].read(), content_type=content_type)


storage_service = StorageService()
