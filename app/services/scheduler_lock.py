"""DB-backed lease so only one process runs the expiry sweep."""
from __future__ import annotations

import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.scheduler_lock import SchedulerLock
from app.utils.time import as_utc, utcnow

LOCK_NAME = "project-expiry"
LOCK_TTL_SECONDS = 300


@contextmanager
def _session(db_session: Session | None) -> Iterator[Session]:
    if db_session is not None:
        yield db_session
        return
    session = db.get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


def owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _load(session: Session, name: str) -> SchedulerLock | None:
    return session.execute(
        select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
    ).scalar_one_or_none()


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Take the lease if it is free, expired or already ours."""

    owner = owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)
    with _session(db_session) as session:
        try:
            lock = _load(session, name)
            if lock is None:
                session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            elif lock.owner == owner:
                lock.expires_at = expires
            elif lock.expires_at is None or as_utc(lock.expires_at) <= now:
                lock.owner = owner
                lock.acquired_at = now
                lock.expires_at = expires
            else:
                session.rollback()
                return False
            session.commit()
        except IntegrityError:
            # Another runner inserted the row first.
            session.rollback()
            return False
    return True


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> bool:
    with _session(db_session) as session:
        lock = _load(session, name)
        if lock is None or lock.owner != owner_id():
            session.rollback()
            return False
        lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session.commit()
    return True


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    with _session(db_session) as session:
        lock = _load(session, name)
        if lock is not None and lock.owner == owner_id():
            session.delete(lock)
        session.commit()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Summarise the lease for the health endpoint."""

    with _session(db_session) as session:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}
        now = utcnow()
        expires_at = as_utc(lock.expires_at)
        expires_in = (expires_at - now).total_seconds() if expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - as_utc(lock.acquired_at)).total_seconds(),
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < 0,
        }


__all__ = [
    "LOCK_NAME",
    "owner_id",
    "try_acquire_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "describe_scheduler_lock",
]
