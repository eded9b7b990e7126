from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db
from ..auth.jwt import load_session_user, resolve_session
from ..core.errors import NotFound, Unauthenticated
from ..models.models import Notification, User, utcnow
from ..schemas.schemas import ListResponse, NotificationRead
from ..services.notifications import notification_center, notification_websocket_handler

router = APIRouter()

WS_UNAUTHORIZED = 4401


def _own_notifications(db: Session, user: User):
    return db.query(Notification).filter(Notification.user_id == user.id)


@router.get("/", response_model=ListResponse[NotificationRead])
def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    include_read: bool = Query(True),
    categories: Optional[List[str]] = Query(None, description="Filter by category."),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    query = _own_notifications(db, current_user)
    if not include_read:
        query = query.filter(Notification.read_at.is_(None))
    wanted = sorted({category.strip().lower() for category in categories or [] if category and category.strip()})
    if wanted:
        query = query.filter(func.lower(Notification.category).in_(wanted))
    items = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    if items:
        message = f"{len(items)} notifications found."
    elif include_read and not wanted:
        message = "No notifications yet."
    else:
        message = "No notifications match these filters."
    return {"items": items, "count": len(items), "message": message}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Notification:
    notification = _own_notifications(db, current_user).filter(Notification.id == notification_id).first()
    if notification is None:
        raise NotFound("Notification not found.")
    if notification.read_at is not None:
        return notification
    notification.read_at = utcnow()
    db.commit()
    notification_center.dispatch_read(current_user.id, notification.id, notification.read_at)
    return notification


@router.post("/read-all", response_model=dict)
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    unread = _own_notifications(db, current_user).filter(Notification.read_at.is_(None)).all()
    if not unread:
        return {"updated": 0}
    read_at = utcnow()
    for notification in unread:
        notification.read_at = read_at
    db.commit()
    notification_center.dispatch_bulk_read(current_user.id, [notification.id for notification in unread])
    return {"updated": len(unread)}


@router.websocket("/ws")
async def websocket_notifications(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> None:
    """Live feed; the bearer token travels as a query parameter."""
    try:
        user = load_session_user(db, resolve_session(token))
    except Unauthenticated:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    await notification_websocket_handler(user.id, websocket)
