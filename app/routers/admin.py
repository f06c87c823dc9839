"""Administrative maintenance endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.security import require_scope
from app.services.notifications import NotificationSink, get_notification_sink
from app.services.projects import expire_stale_projects
from app.utils.audit import actor_from_api_key

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/projects/expire")
def expire_projects(
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> dict[str, list[int]]:
    """Run the quote-window expiry sweep now."""

    expired = expire_stale_projects(db, actor=actor_from_api_key(api_key), sink=sink)
    return {"expired": expired}
