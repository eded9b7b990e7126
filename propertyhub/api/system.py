import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..config import settings
from ..core.version import get_version_info

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health(db: Session = Depends(get_db)) -> JSONResponse:
    """Liveness plus a one-row database check; 503 when the store is down."""
    payload: Dict[str, Any] = {
        **get_version_info(),
        "storage_backend": settings.file_storage_backend,
        "email_backend": settings.email_backend,
    }
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        return JSONResponse(status_code=503, content={**payload, "status": "degraded", "database": "unavailable"})
    return JSONResponse(content={**payload, "status": "ok", "database": "ok"})
