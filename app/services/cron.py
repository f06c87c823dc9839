"""Background jobs run by the optional scheduler."""
from __future__ import annotations

import logging

from app.db import session_scope
from app.services.notifications import DatabaseNotificationSink
from app.services.projects import expire_stale_projects
from app.services.scheduler_lock import refresh_scheduler_lock

logger = logging.getLogger(__name__)


def expire_projects_once() -> list[int]:
    """Expire projects whose quote window has elapsed."""

    if not refresh_scheduler_lock():
        logger.warning("Scheduler lease lost, skipping project expiry")
        return []
    with session_scope() as db:
        return expire_stale_projects(db, sink=DatabaseNotificationSink(db))
