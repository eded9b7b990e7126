import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors that map to a stable ``kind`` and HTTP status."""

    kind = "internal"
    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "detail": self.message}


class Unauthenticated(DomainError):
    kind = "unauthenticated"
    status_code = 401
    default_message = "Authentication required. Please log in."


class Forbidden(DomainError):
    kind = "forbidden"
    status_code = 403
    default_message = "Operation not permitted."


class NotFound(DomainError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found."


class InvalidTransition(DomainError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current_status: str, target_status: str) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}.")

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["from_status"] = self.current_status
        payload["to_status"] = self.target_status
        return payload


class InvalidState(DomainError):
    kind = "invalid_state"
    status_code = 422
    default_message = "Invalid initial state."


class InvalidDate(DomainError):
    kind = "invalid_date"
    status_code = 422
    default_message = "Completion date cannot precede the start date."


class Conflict(DomainError):
    kind = "conflict"
    status_code = 409
    default_message = "The resource was changed by another request. Please retry."


class ValidationError(DomainError):
    """Field-level failures; ``errors`` maps each failing field to one message."""

    kind = "validation_error"
    status_code = 422
    default_message = "Validation failed."

    def __init__(self, errors: Dict[str, str], message: Optional[str] = None) -> None:
        self.errors = dict(errors)
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["errors"] = self.errors
        return payload


class Unavailable(DomainError):
    kind = "unavailable"
    status_code = 503
    default_message = "A downstream service did not respond in time."


def _field_errors(exc: RequestValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "form")]
        field = ".".join(location) or "__root__"
        # One message per field; the first failure wins.
        errors.setdefault(field, error.get("msg", "Invalid value."))
    return errors


def register_exception_handlers(app: FastAPI, *, expose_details: bool = False) -> None:
    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:  # type: ignore[override]
        if exc.status_code >= 500:
            logger.warning("%s on %s: %s", exc.kind, request.url.path, exc.message)
        payload = exc.to_payload()
        payload["path"] = str(request.url.path)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "kind": ValidationError.kind,
                "detail": "Validation failed.",
                "errors": _field_errors(exc),
                "path": str(request.url.path),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "kind": "http_error",
            "detail": exc.detail or "HTTP error.",
            "path": str(request.url.path),
        }
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(OperationalError)
    async def storage_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:  # type: ignore[override]
        logger.error("Database unavailable on %s: %s", request.url.path, exc.orig)
        error = Unavailable("The database did not respond in time. Please retry.")
        payload = error.to_payload()
        payload["path"] = str(request.url.path)
        return JSONResponse(status_code=error.status_code, content=payload)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        payload: Dict[str, Any] = {
            "kind": "internal",
            "detail": "Internal server error.",
            "path": str(request.url.path),
        }
        if expose_details:
            payload["error"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=payload)
