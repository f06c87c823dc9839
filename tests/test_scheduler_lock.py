from contextlib import contextmanager
from datetime import timedelta

import pytest

from app.models import ProjectStatus, SchedulerLock
from app.services import cron
from app.services import scheduler_lock as lock_mod
from app.utils.time import utcnow


@pytest.fixture
def as_owner(monkeypatch):
    def _switch(owner: str) -> None:
        monkeypatch.setattr(lock_mod, "owner_id", lambda: owner)

    return _switch


def test_single_owner_at_a_time(db_session, as_owner):
    as_owner("runner-a")
    assert lock_mod.try_acquire_scheduler_lock(db_session=db_session) is True

    as_owner("runner-b")
    assert lock_mod.try_acquire_scheduler_lock(db_session=db_session) is False
    assert lock_mod.refresh_scheduler_lock(db_session=db_session) is False

    lock = db_session.get(SchedulerLock, 1)
    assert lock.name == lock_mod.LOCK_NAME
    assert lock.owner == "runner-a"


def test_expired_lease_is_taken_over(db_session, as_owner):
    as_owner("runner-a")
    lock_mod.try_acquire_scheduler_lock(ttl_seconds=60, db_session=db_session)
    lock = db_session.get(SchedulerLock, 1)
    lock.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    as_owner("runner-b")
    assert lock_mod.try_acquire_scheduler_lock(db_session=db_session) is True
    assert lock_mod.describe_scheduler_lock(db_session=db_session)["status"] == "owned_by_self"


def test_release_only_by_owner(db_session, as_owner):
    as_owner("runner-a")
    lock_mod.try_acquire_scheduler_lock(db_session=db_session)

    as_owner("runner-b")
    lock_mod.release_scheduler_lock(db_session=db_session)
    assert lock_mod.describe_scheduler_lock(db_session=db_session)["owner"] == "runner-a"

    as_owner("runner-a")
    lock_mod.release_scheduler_lock(db_session=db_session)
    assert lock_mod.describe_scheduler_lock(db_session=db_session) == {"status": "none", "owner": None, "present": False}


def test_cron_skips_without_lease(monkeypatch):
    monkeypatch.setattr(cron, "refresh_scheduler_lock", lambda: False)

    assert cron.expire_projects_once() == []


def test_cron_expires_stale_projects(monkeypatch, db_session, quoted_project):
    project, _ = quoted_project()
    project.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    @contextmanager
    def _scope():
        yield db_session

    monkeypatch.setattr(cron, "refresh_scheduler_lock", lambda: True)
    monkeypatch.setattr(cron, "session_scope", _scope)

    assert cron.expire_projects_once() == [project.id]
    db_session.refresh(project)
    assert project.status == ProjectStatus.EXPIRED
