"""Per-project mutual exclusion.

Every mutating operation on a project, its quotes or its escrow runs inside
``project_lock``: an in-process re-entrant lock keyed by project id, plus a
``SELECT ... FOR UPDATE`` on the project row for databases that support it.
Operations on different projects never contend.
"""
from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.project import Project

_registry_guard = threading.Lock()
_project_locks: dict[int, threading.RLock] = {}
_deposit_locks: dict[int, asyncio.Lock] = {}


def _lock_for(project_id: int) -> threading.RLock:
    with _registry_guard:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.RLock()
            _project_locks[project_id] = lock
        return lock


def deposit_lock(project_id: int) -> asyncio.Lock:
    """Serialises concurrent deposit attempts on one project inside the event loop."""

    with _registry_guard:
        lock = _deposit_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            _deposit_locks[project_id] = lock
        return lock


@contextmanager
def project_lock(db: Session, project_id: int) -> Iterator[None]:
    """Hold the project's lock; anything left uncommitted is rolled back if the body raises."""

    lock = _lock_for(project_id)
    with lock:
        db.execute(select(Project.id).where(Project.id == project_id).with_for_update())
        try:
            yield
        except Exception:
            db.rollback()
            raise


def reset_locks() -> None:
    """Drop every registered lock (test isolation)."""

    with _registry_guard:
        _project_locks.clear()
        _deposit_locks.clear()


__all__ = ["project_lock", "deposit_lock", "reset_locks"]
