"""Per-user notification inbox."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.notification import Notification
from app.schemas.notification import NotificationRead
from app.security import require_scope, require_user_id
from app.services.notifications import list_notifications, mark_notification_read

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
def read_inbox(
    unread_only: bool = False,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
) -> list[Notification]:
    return list_notifications(db, require_user_id(api_key), unread_only=unread_only)


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.client, ApiScope.artisan})),
) -> Notification:
    return mark_notification_read(db, notification_id, require_user_id(api_key))
