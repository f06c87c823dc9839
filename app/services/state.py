"""Record lookups and project status bookkeeping shared by the engine services."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.dispute import Dispute
from app.models.escrow import Escrow
from app.models.project import Project, ProjectStatus
from app.models.quote import Quote, QuoteStatus
from app.services.transitions import assert_consistent
from app.utils.audit import log_audit
from app.utils.errors import NotFoundError

logger = logging.getLogger(__name__)


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def get_quote(db: Session, quote_id: int) -> Quote:
    quote = db.get(Quote, quote_id)
    if quote is None:
        raise NotFoundError("Quote", quote_id)
    return quote


def get_escrow(db: Session, escrow_id: int) -> Escrow:
    escrow = db.get(Escrow, escrow_id)
    if escrow is None:
        raise NotFoundError("Escrow", escrow_id)
    return escrow


def get_dispute(db: Session, dispute_id: int) -> Dispute:
    dispute = db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFoundError("Dispute", dispute_id)
    return dispute


def escrow_for_project(db: Session, project_id: int) -> Escrow | None:
    return db.scalars(select(Escrow).where(Escrow.project_id == project_id)).first()


def accepted_quotes(db: Session, project_id: int) -> list[Quote]:
    stmt = select(Quote).where(Quote.project_id == project_id, Quote.status == QuoteStatus.ACCEPTED)
    return list(db.scalars(stmt).all())


def accepted_quote(db: Session, project_id: int) -> Quote | None:
    quotes = accepted_quotes(db, project_id)
    return quotes[0] if quotes else None


def ensure_consistent(db: Session, project: Project) -> None:
    """Flush pending changes and verify the project / escrow / quote combination."""

    db.flush()
    assert_consistent(project, escrow_for_project(db, project.id), accepted_quotes(db, project.id))


def set_project_status(
    db: Session,
    project: Project,
    new_status: ProjectStatus,
    *,
    actor: str,
    action: str,
    data: dict[str, Any] | None = None,
) -> None:
    previous = project.status
    project.status = new_status
    log_audit(
        db,
        actor=actor,
        action=action,
        entity="Project",
        entity_id=project.id,
        data={"from": previous.value, "to": new_status.value, **(data or {})},
    )
    logger.info(
        "Project status changed",
        extra={"project_id": project.id, "from": previous.value, "to": new_status.value, "action": action},
    )


__all__ = [
    "get_project",
    "get_quote",
    "get_escrow",
    "get_dispute",
    "escrow_for_project",
    "accepted_quotes",
    "accepted_quote",
    "ensure_consistent",
    "set_project_status",
]
