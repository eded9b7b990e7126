import asyncio
import logging
from io import BytesIO

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles

from .api import apartments, auth, maintenance, notifications, rent, system, users
from .config import settings
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .core.security import SecurityHeadersMiddleware, log_security_warnings
from .core.timeouts import shutdown_executor
from .database import database
from .services.notifications import notification_center, notification_dispatcher
from .services.rent import scan_rent_payments
from .services.storage import StorageBackend, storage_service

logger = logging.getLogger(__name__)

app = FastAPI(title="PropertyHub")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.is_production)
register_exception_handlers(app, expose_details=settings.expose_error_details)

uploads_route = "/" + settings.uploads_public_prefix.strip("/")
if storage_service.backend == StorageBackend.LOCAL:
    app.mount(
        uploads_route,
        StaticFiles(directory=str(settings.uploads_root_path), check_dir=False),
        name="uploads",
    )
else:

    @app.get(f"{uploads_route}/{{path:path}}", include_in_schema=False)
    def proxy_uploads(path: str):
        file_data = storage_service.retrieve_file(path)
        return StreamingResponse(BytesIO(file_data.content), media_type=file_data.content_type)


app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(users.router, prefix="/users", tags=["users"])
app.include_router(apartments.router, prefix="/apartments", tags=["apartments"])
app.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])
app.include_router(rent.router, prefix="/rent", tags=["rent"])
app.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
app.include_router(system.router, prefix="/system", tags=["system"])


def run_startup_rent_scan() -> None:
    with database.session() as session:
        try:
            result = scan_rent_payments(session, dispatcher=notification_dispatcher)
        except Exception:
            logger.exception("Startup rent scan failed")
            return
    logger.info("Startup rent scan sent %d reminders", result.reminders_sent)


@app.on_event("startup")
def startup() -> None:
    configure_logging(settings.log_level, json=settings.is_production)
    log_security_warnings(
        settings.jwt_secret,
        settings.email_backend,
        settings.expose_error_details,
        settings.cors_origins,
    )
    if storage_service.backend == StorageBackend.LOCAL:
        settings.uploads_root_path.mkdir(parents=True, exist_ok=True)
    # In dev we make sure tables exist. Alembic migrations should be used for real schema evolution.
    if not database.is_initialized:
        database.init(create_schema=True)
    if settings.run_rent_scan_on_startup:
        run_startup_rent_scan()


@app.on_event("startup")
async def configure_notification_center() -> None:
    notification_center.configure_loop(asyncio.get_running_loop())


@app.on_event("shutdown")
async def shutdown_notification_center() -> None:
    await notification_center.shutdown()


@app.on_event("shutdown")
def shutdown() -> None:
    database.dispose()
    shutdown_executor()
