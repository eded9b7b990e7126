from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Set

from fastapi import WebSocket
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect, WebSocketState

from ..config import settings
from ..core.timeouts import run_with_timeout
from ..models.models import Notification, User, utcnow
from ..schemas.schemas import NotificationRead
from .email import send_email

logger = logging.getLogger(__name__)


class NotificationCenter:
    """Fan-out of in-app notifications to each user's open WebSockets."""

    def __init__(self) -> None:
        self._connections: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def configure_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop
        logger.debug("NotificationCenter bound to event loop %s", loop)

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections[user_id].add(websocket)
        logger.debug("WebSocket connected for user %s (total=%s)", user_id, len(self._connections[user_id]))

    async def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(user_id)
            if connections and websocket in connections:
                connections.remove(websocket)
            if not connections:
                self._connections.pop(user_id, None)
        logger.debug("WebSocket disconnected for user %s", user_id)

    async def _send_to_user(self, user_id: int, payload: dict) -> None:
        async with self._lock:
            connections = list(self._connections.get(user_id, set()))
        for websocket in connections:
            if websocket.application_state != WebSocketState.CONNECTED:
                continue
            try:
                await websocket.send_json(payload)
            except RuntimeError:
                # Closed between selection and send.
                continue
            except Exception:
                logger.exception("Failed to send notification payload to user %s", user_id)

    def _schedule(self, user_id: int, payload: dict) -> None:
        if not self._loop:
            logger.debug("NotificationCenter loop not configured; skipping push.")
            return
        asyncio.run_coroutine_threadsafe(self._send_to_user(user_id, payload), self._loop)

    def dispatch_created(self, notification: Notification) -> None:
        self._schedule(
            notification.user_id,
            {"type": "notification.created", "notification": serialize_notification(notification)},
        )

    def dispatch_read(self, user_id: int, notification_id: int, read_at: datetime) -> None:
        self._schedule(user_id, {"type": "notification.read", "id": notification_id, "read_at": read_at.isoformat()})

    def dispatch_bulk_read(self, user_id: int, notification_ids: List[int]) -> None:
        if not notification_ids:
            return
        self._schedule(
            user_id,
            {
                "type": "notification.bulk_read",
                "ids": notification_ids,
                "read_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def shutdown(self) -> None:
        async with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
        self._loop = None
        for user_id, websockets in connections:
            for websocket in websockets:
                if websocket.application_state != WebSocketState.CONNECTED:
                    continue
                try:
                    await websocket.close()
                except RuntimeError:
                    continue
                except Exception:
                    logger.exception("Failed to close WebSocket for user %s", user_id)


notification_center = NotificationCenter()


def serialize_notification(notification: Notification) -> dict:
    return NotificationRead.model_validate(notification).model_dump(mode="json")


def record_notification(
    session: Session,
    user_id: int,
    *,
    title: str,
    message: str,
    level: str = "info",
    category: Optional[str] = None,
    link_url: Optional[str] = None,
) -> Notification:
    """Append an entry to a user's notification log; the caller commits."""
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        level=level,
        category=category,
        link_url=link_url,
        created_at=utcnow(),
    )
    session.add(notification)
    session.flush()
    return notification


def create_notification(
    session: Session,
    *,
    title: str,
    message: str,
    user_ids: Iterable[int],
    level: str = "info",
    category: Optional[str] = None,
    link_url: Optional[str] = None,
) -> List[Notification]:
    recipient_ids = sorted({user_id for user_id in user_ids if user_id is not None})
    notifications = [
        record_notification(
            session,
            recipient_id,
            title=title,
            message=message,
            level=level,
            category=category,
            link_url=link_url,
        )
        for recipient_id in recipient_ids
    ]
    return notifications


async def notification_websocket_handler(user_id: int, websocket: WebSocket) -> None:
    await notification_center.connect(user_id, websocket)
    try:
        await websocket.send_json({"type": "notification.connected"})
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                break
    finally:
        await notification_center.disconnect(user_id, websocket)


@dataclass(frozen=True)
class MaintenanceStatusEvent:
    request_id: int
    title: str
    old_status: str
    new_status: str
    recipients: List[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "title": self.title,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "recipients": list(self.recipients),
        }


@dataclass(frozen=True)
class OutboundMessage:
    subject: str
    body: str
    to_address: Optional[str] = None
    category: Optional[str] = None
    link_url: Optional[str] = None


class NotificationTransport(Protocol):
    def send(self, recipient_id: int, message: OutboundMessage) -> None:
        ...


class EmailNotificationTransport:
    def send(self, recipient_id: int, message: OutboundMessage) -> None:
        if not message.to_address:
            logger.info("No email address for user %s; skipping email delivery.", recipient_id)
            return
        send_email(message.subject, message.body, [message.to_address])


class NotificationDispatcher:
    """Delivers notifications after the business transaction has committed.

    Each recipient gets an in-app log entry, a WebSocket push and a message on
    the external transport. Failures are logged per recipient and never raised.
    """

    def __init__(
        self,
        transport: Optional[NotificationTransport] = None,
        *,
        timeout_seconds: Optional[float] = None,
        center: Optional[NotificationCenter] = None,
    ) -> None:
        self.transport = transport if transport is not None else EmailNotificationTransport()
        self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds
        self.center = center or notification_center

    def notify(
        self,
        session: Session,
        user_ids: Iterable[int],
        *,
        title: str,
        message: str,
        level: str = "info",
        category: Optional[str] = None,
        link_url: Optional[str] = None,
        send_external: bool = True,
    ) -> int:
        """Notify each user; returns how many external deliveries succeeded."""
        recipient_ids = sorted({user_id for user_id in user_ids if user_id is not None})
        if not recipient_ids:
            return 0

        try:
            notifications = create_notification(
                session,
                title=title,
                message=message,
                user_ids=recipient_ids,
                level=level,
                category=category,
                link_url=link_url,
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to record in-app notifications for users %s", recipient_ids)
            notifications = []

        for notification in notifications:
            self.center.dispatch_created(notification)

        if not send_external:
            return 0

        delivered = 0
        for recipient_id in recipient_ids:
            user = session.get(User, recipient_id)
            outbound = OutboundMessage(
                subject=title,
                body=message,
                to_address=user.email if user else None,
                category=category,
                link_url=link_url,
            )
            if self._deliver(recipient_id, outbound):
                delivered += 1
        return delivered

    def _deliver(self, recipient_id: int, outbound: OutboundMessage) -> bool:
        try:
            run_with_timeout(
                self.transport.send,
                self.timeout_seconds,
                recipient_id,
                outbound,
                description=f"notification delivery to user {recipient_id}",
            )
        except Exception:
            logger.exception("Notification delivery to user %s failed", recipient_id)
            return False
        return True

    def dispatch_status_change(self, session: Session, event: MaintenanceStatusEvent) -> int:
        logger.info(
            "Maintenance request %s moved %s -> %s",
            event.request_id,
            event.old_status,
            event.new_status,
            extra={"event": event.as_dict()},
        )
        return self.notify(
            session,
            event.recipients,
            title=f"Maintenance request {event.new_status}",
            message=f'"{event.title}" changed from {event.old_status} to {event.new_status}.',
            level="success" if event.new_status == "completed" else "info",
            category="maintenance",
            link_url=f"/maintenance/{event.request_id}",
        )


notification_dispatcher = NotificationDispatcher()
