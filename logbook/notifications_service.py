from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from logbook.db.models import Notification
from logbook.time_utils import to_iso


logger = structlog.get_logger(__name__)


class NotificationNotFoundError(Exception):
    """Raised when attempting to update a notification that does not exist."""


def serialise(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "userId": notification.user_id,
        "title": notification.title,
        "content": notification.content,
        "type": notification.type,
        "relatedId": notification.related_id,
        "read": bool(notification.read),
        "createdAt": to_iso(notification.created_at),
    }


def create_notification(
    session: Session,
    user_id: str,
    title: str,
    content: str,
    *,
    type: str = "info",
    related_id: Optional[str] = None,
) -> Notification:
    """Persist a notification for *user_id* and return it."""

    notification = Notification(
        user_id=user_id,
        title=title,
        content=content,
        type=type,
        related_id=related_id,
        read=False,
    )
    session.add(notification)
    session.flush()
    logger.info("notification_created", user_id=user_id, type=type, related_id=related_id)
    return notification


def unread_count(session: Session, user_id: str) -> int:
    return int(
        session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.read.is_(False)
            )
        ).scalar_one()
    )


def list_notifications(
    session: Session,
    user_id: str,
    *,
    limit: int,
    offset: int,
) -> Dict[str, Any]:
    """Return paginated notifications for *user_id*, newest first."""

    rows = session.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    total = int(
        session.execute(
            select(func.count(Notification.id)).where(Notification.user_id == user_id)
        ).scalar_one()
    )
    next_offset = offset + limit if offset + limit < total else None
    return {
        "items": [serialise(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "nextOffset": next_offset,
        "unreadCount": unread_count(session, user_id),
    }


def mark_read(session: Session, user_id: str, notification_id: str) -> Notification:
    """Mark a single notification as read and return it."""

    notification = session.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotificationNotFoundError(notification_id)
    if not notification.read:
        notification.read = True
        session.flush()
    return notification


def mark_all_read(session: Session, user_id: str) -> int:
    """Mark every notification for *user_id* as read; return how many changed."""

    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    return int(result.rowcount or 0)


__all__ = [
    "NotificationNotFoundError",
    "create_notification",
    "list_notifications",
    "mark_all_read",
    "mark_read",
    "serialise",
    "unread_count",
]
