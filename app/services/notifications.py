"""Notification sink used by the engine once a transition has committed."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.notification import Notification
from app.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

TEMPLATES = frozenset(
    {
        "quote_received",
        "quote_accepted",
        "quote_rejected",
        "payment_held",
        "advance_released",
        "payment_released",
        "completion_requested",
        "project_completed",
        "dispute_opened",
        "dispute_resolved",
        "project_cancelled",
        "payment_refunded",
        "project_expired",
    }
)


class NotificationSink(Protocol):
    def notify(self, user_id: int, template: str, payload: Mapping[str, Any]) -> None: ...


class DatabaseNotificationSink:
    """Stores notifications in the user's in-app inbox."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify(self, user_id: int, template: str, payload: Mapping[str, Any]) -> None:
        if template not in TEMPLATES:
            raise ValueError(f"Unknown notification template: {template}")
        self.db.add(Notification(user_id=user_id, template=template, payload=dict(payload)))
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


class NullNotificationSink:
    def notify(self, user_id: int, template: str, payload: Mapping[str, Any]) -> None:
        return None


def notify_safely(
    sink: NotificationSink | None,
    user_id: int | None,
    template: str,
    payload: Mapping[str, Any],
) -> bool:
    """Fire-and-forget delivery. Failures are logged; the caller's transition stays committed."""

    if sink is None or user_id is None:
        return False
    try:
        sink.notify(user_id, template, payload)
    except Exception:
        logger.warning(
            "Notification delivery failed",
            exc_info=True,
            extra={"user_id": user_id, "template": template},
        )
        return False
    return True


def list_notifications(db: Session, user_id: int, *, unread_only: bool = False) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return list(db.scalars(stmt.order_by(Notification.id.desc())).all())


def mark_notification_read(db: Session, notification_id: int, user_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFoundError("Notification", notification_id)
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def get_notification_sink(db: Session = Depends(get_db)) -> NotificationSink:
    """FastAPI dependency returning the inbox-backed sink."""

    return DatabaseNotificationSink(db)


__all__ = [
    "TEMPLATES",
    "NotificationSink",
    "DatabaseNotificationSink",
    "NullNotificationSink",
    "notify_safely",
    "list_notifications",
    "mark_notification_read",
    "get_notification_sink",
]
