"""Project lifecycle: the client's job and the status the quotes and escrow project onto."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.dispute import Dispute, DisputeStatus
from app.models.escrow import EscrowStatus
from app.models.project import TERMINAL_PROJECT_STATUSES, Project, ProjectStatus
from app.models.quote import LIVE_QUOTE_STATUSES, Quote, QuoteStatus
from app.models.user import User
from app.services import escrow as escrow_service
from app.services.locks import project_lock
from app.services.notifications import NotificationSink, notify_safely
from app.services.state import (
    accepted_quote,
    ensure_consistent,
    escrow_for_project,
    get_project,
    set_project_status,
)
from app.services.transitions import require_project_status
from app.utils.audit import log_audit
from app.utils.errors import NotFoundError, PolicyViolationError
from app.utils.time import as_utc, days_from, utcnow

logger = logging.getLogger(__name__)


def _live_quotes(db: Session, project_id: int) -> list[Quote]:
    stmt = select(Quote).where(Quote.project_id == project_id, Quote.status.in_(LIVE_QUOTE_STATUSES))
    return list(db.scalars(stmt).all())


def _close_live_quotes(db: Session, project: Project, new_status: QuoteStatus, *, actor: str) -> list[Quote]:
    quotes = _live_quotes(db, project.id)
    for quote in quotes:
        quote.status = new_status
        log_audit(
            db,
            actor=actor,
            action=f"QUOTE_{new_status.value.upper()}",
            entity="Quote",
            entity_id=quote.id,
            data={"project_id": project.id, "project_status": project.status.value},
        )
    return quotes


def list_projects(db: Session, *, client_id: int | None = None, status: ProjectStatus | None = None) -> list[Project]:
    stmt = select(Project)
    if client_id is not None:
        stmt = stmt.where(Project.client_id == client_id)
    if status is not None:
        stmt = stmt.where(Project.status == status)
    return list(db.scalars(stmt.order_by(Project.id.desc())).all())


def create_project(
    db: Session,
    client_id: int,
    title: str,
    *,
    description: str | None = None,
    category: str | None = None,
    location: str | None = None,
    is_urgent: bool = False,
    publish: bool = True,
    actor: str | None = None,
) -> Project:
    """Create a project, open for quotes unless ``publish`` is false."""

    if db.get(User, client_id) is None:
        raise NotFoundError("User", client_id)
    now = utcnow()
    project = Project(
        client_id=client_id,
        title=title,
        description=description,
        category=category,
        location=location,
        is_urgent=is_urgent,
        status=ProjectStatus.OPEN if publish else ProjectStatus.DRAFT,
        expires_at=days_from(now, get_settings().PROJECT_QUOTE_WINDOW_DAYS) if publish else None,
    )
    db.add(project)
    db.flush()
    log_audit(
        db,
        actor=actor or f"user:{client_id}",
        action="PROJECT_CREATED",
        entity="Project",
        entity_id=project.id,
        data={"status": project.status.value, "is_urgent": is_urgent},
    )
    db.commit()
    db.refresh(project)
    logger.info("Project created", extra={"project_id": project.id, "status": project.status.value})
    return project


def publish_project(db: Session, project_id: int, *, actor: str | None = None) -> Project:
    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "publish")
        project.expires_at = days_from(utcnow(), get_settings().PROJECT_QUOTE_WINDOW_DAYS)
        set_project_status(
            db, project, ProjectStatus.OPEN, actor=actor or f"user:{project.client_id}", action="PROJECT_PUBLISHED"
        )
        db.commit()
    db.refresh(project)
    return project


def cancel_project(
    db: Session,
    project_id: int,
    *,
    reason: str | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Project:
    """Cancel a project nobody has been engaged on yet.

    Refused with ``PolicyViolationError`` once a quote is accepted or money
    has been deposited. Live quotes are closed as abandoned.
    """

    actor = actor or "client"
    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        if project.status in TERMINAL_PROJECT_STATUSES:
            require_project_status(project, "cancel")
        escrow = escrow_for_project(db, project_id)
        accepted = accepted_quote(db, project_id)
        if accepted is not None or (escrow is not None and escrow.status != EscrowStatus.PENDING):
            raise PolicyViolationError(
                "The project can no longer be cancelled: a quote was accepted or funds were deposited.",
                details={
                    "project_id": project_id,
                    "project_status": project.status.value,
                    "escrow_status": escrow.status.value if escrow else None,
                    "accepted_quote_id": accepted.id if accepted else None,
                },
            )
        require_project_status(project, "cancel")
        closed = _close_live_quotes(db, project, QuoteStatus.ABANDONED, actor=actor)
        project.closed_at = utcnow()
        set_project_status(
            db, project, ProjectStatus.CANCELLED, actor=actor, action="PROJECT_CANCELLED", data={"reason": reason}
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(project)
    for quote in closed:
        notify_safely(sink, quote.provider_id, "project_cancelled", {"project_id": project_id, "reason": reason})
    return project


def _require_party(project: Project, user_id: int, provider_id: int | None, action: str) -> None:
    if user_id not in {project.client_id, provider_id}:
        raise PolicyViolationError(
            f"Only the client or the engaged provider may {action}.",
            details={"project_id": project.id, "user_id": user_id},
        )


def request_completion(
    db: Session,
    project_id: int,
    requested_by: int,
    *,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Project:
    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "request_completion")
        quote = accepted_quote(db, project_id)
        provider_id = quote.provider_id if quote else None
        _require_party(project, requested_by, provider_id, "request completion")
        project.completion_requested_by = requested_by
        project.completion_requested_at = utcnow()
        set_project_status(
            db,
            project,
            ProjectStatus.COMPLETION_REQUESTED,
            actor=actor or f"user:{requested_by}",
            action="PROJECT_COMPLETION_REQUESTED",
            data={"requested_by": requested_by},
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(project)
    other_party = provider_id if requested_by == project.client_id else project.client_id
    notify_safely(sink, other_party, "completion_requested", {"project_id": project_id, "requested_by": requested_by})
    return project


def confirm_completion(
    db: Session,
    project_id: int,
    *,
    confirmed_by: int | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Project:
    """Client sign-off: release the remaining payout and complete the project together."""

    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "confirm_completion")
        if confirmed_by is not None and confirmed_by != project.client_id:
            raise PolicyViolationError(
                "Only the client can confirm completion.", details={"project_id": project_id, "user_id": confirmed_by}
            )
        actor = actor or f"user:{project.client_id}"
        escrow = escrow_for_project(db, project_id)
        remaining = escrow_service.release_full_payment(db, escrow, actor=actor)
        now = utcnow()
        project.client_confirmed_at = now
        project.closed_at = now
        set_project_status(
            db, project, ProjectStatus.COMPLETED, actor=actor, action="PROJECT_COMPLETED", data={"remaining_released": remaining}
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(project)
    quote = accepted_quote(db, project_id)
    provider_id = quote.provider_id if quote else None
    notify_safely(sink, provider_id, "payment_released", {"project_id": project_id, "amount": remaining})
    for user_id in (project.client_id, provider_id):
        notify_safely(sink, user_id, "project_completed", {"project_id": project_id})
    return project


def raise_dispute(
    db: Session,
    project_id: int,
    raised_by: int,
    reason: str,
    *,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Dispute:
    """Freeze the escrow and open a dispute for an administrator to settle.

    While the work is in progress only the client may raise it; once
    completion is requested either party may.
    """

    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "raise_dispute")
        quote = accepted_quote(db, project_id)
        provider_id = quote.provider_id if quote else None
        _require_party(project, raised_by, provider_id, "raise a dispute")
        if project.status == ProjectStatus.IN_PROGRESS and raised_by != project.client_id:
            raise PolicyViolationError(
                "Only the client can raise a dispute while the work is in progress.",
                details={"project_id": project_id, "user_id": raised_by},
            )
        actor = actor or f"user:{raised_by}"
        escrow = escrow_for_project(db, project_id)
        escrow_service.freeze(db, escrow, actor=actor, reason=reason)
        dispute = Dispute(
            project_id=project_id,
            escrow_id=escrow.id,
            raised_by=raised_by,
            reason=reason,
            status=DisputeStatus.OPEN,
        )
        db.add(dispute)
        db.flush()
        log_audit(
            db,
            actor=actor,
            action="DISPUTE_OPENED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"project_id": project_id, "escrow_id": escrow.id},
        )
        set_project_status(
            db, project, ProjectStatus.DISPUTED, actor=actor, action="PROJECT_DISPUTED", data={"dispute_id": dispute.id}
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(dispute)
    logger.info("Dispute opened", extra={"dispute_id": dispute.id, "project_id": project_id, "raised_by": raised_by})
    for user_id in (project.client_id, provider_id):
        notify_safely(sink, user_id, "dispute_opened", {"project_id": project_id, "dispute_id": dispute.id})
    return dispute


def retry_escrow_creation(db: Session, project_id: int, *, actor: str | None = None) -> Project:
    """Create the escrow a deferred acceptance could not.

    The project stays in ``payment_pending`` until the deposit is confirmed.
    Calling it when the escrow already exists returns the project unchanged.
    """

    actor = actor or "system"
    project = get_project(db, project_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "retry_escrow_creation")
        if escrow_for_project(db, project_id) is not None:
            return project
        quote = accepted_quote(db, project_id)
        provider = db.get(User, quote.provider_id)
        escrow = escrow_service.add_escrow(
            db,
            project_id,
            quote.amount,
            provider_is_verified=bool(provider and provider.is_verified),
            urgent_surcharge_percent=quote.urgent_surcharge_percent,
            actor=actor,
        )
        log_audit(
            db, actor=actor, action="ESCROW_CREATION_RETRIED", entity="Project", entity_id=project_id, data={"escrow_id": escrow.id}
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(project)
    logger.info("Deferred escrow created", extra={"project_id": project_id, "escrow_id": escrow.id})
    return project


def expire_stale_projects(
    db: Session,
    *,
    now: datetime | None = None,
    actor: str = "system:expiry",
    sink: NotificationSink | None = None,
) -> list[int]:
    """Expire projects whose quote window elapsed without an acceptance; returns their ids."""

    now = now or utcnow()
    candidates = db.scalars(
        select(Project).where(
            Project.status.in_((ProjectStatus.OPEN, ProjectStatus.QUOTE_RECEIVED)),
            Project.expires_at.is_not(None),
        )
    ).all()
    expired: list[int] = []
    for project in candidates:
        if as_utc(project.expires_at) > now:
            continue
        with project_lock(db, project.id):
            db.refresh(project)
            if project.status not in (ProjectStatus.OPEN, ProjectStatus.QUOTE_RECEIVED):
                continue
            _close_live_quotes(db, project, QuoteStatus.EXPIRED, actor=actor)
            project.closed_at = now
            set_project_status(db, project, ProjectStatus.EXPIRED, actor=actor, action="PROJECT_EXPIRED")
            ensure_consistent(db, project)
            db.commit()
        expired.append(project.id)
        notify_safely(sink, project.client_id, "project_expired", {"project_id": project.id})
    if expired:
        logger.info("Stale projects expired", extra={"count": len(expired), "project_ids": expired})
    return expired


__all__ = [
    "list_projects",
    "create_project",
    "publish_project",
    "cancel_project",
    "request_completion",
    "confirm_completion",
    "raise_dispute",
    "retry_escrow_creation",
    "expire_stale_projects",
]
