import logging
from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .request_context import REQUEST_ID_HEADER, assign_request_id

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "dev-secret-please-change"

# Responses under these prefixes carry tokens or personal data.
NO_STORE_PREFIXES = ("/auth", "/users", "/rent")

BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "same-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and harden every response."""

    def __init__(self, app, *, enable_hsts: bool = True, csp: Optional[str] = None) -> None:
        super().__init__(app)
        self.enable_hsts = enable_hsts
        self.csp = csp

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = assign_request_id(request)
        response = await call_next(request)

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        for name, value in BASE_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers.setdefault("Cache-Control", "no-store")
        if self.enable_hsts and request.url.scheme == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        if self.csp:
            response.headers.setdefault("Content-Security-Policy", self.csp)
        return response


def log_security_warnings(
    jwt_secret: str,
    email_backend: str,
    expose_error_details: bool = False,
    cors_origins: Iterable[str] = (),
) -> None:
    if jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT secret is using the insecure default; set JWT_SECRET in the environment.")
    if (email_backend or "local").strip().lower() == "local":
        logger.warning("Email backend is set to local stub; reminder emails will be written to disk.")
    if expose_error_details:
        logger.warning("EXPOSE_ERROR_DETAILS is enabled; internal errors will leak to clients.")
    if "*" in cors_origins:
        logger.warning("CORS allows any origin while credentials are enabled.")
