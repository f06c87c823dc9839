"""Dispute resolution: split a frozen escrow between client, artisan and platform."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy.orm import Session

from app.models.dispute import Dispute, DisputeStatus, ResolutionMode
from app.models.project import ProjectStatus
from app.services import escrow as escrow_service
from app.services.fees import FeeBreakdown, percent_of
from app.services.locks import project_lock
from app.services.notifications import NotificationSink, notify_safely
from app.services.state import accepted_quote, ensure_consistent, get_dispute, get_project, set_project_status
from app.services.transitions import require_project_status, require_status
from app.utils.audit import log_audit
from app.utils.errors import DomainValidationError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    mode: ResolutionMode
    client_share_percent: int | None
    client_refund: int
    artisan_payment: int
    platform_retained: int

    def as_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


def compute_resolution(
    breakdown: FeeBreakdown,
    mode: ResolutionMode | str,
    client_share_percent: int | None = None,
) -> Resolution:
    """Return the amounts each party receives for ``mode``.

    ``split`` gives the client ``client_share_percent`` of the total and the
    artisan the rest minus the platform commission, never below zero. Any
    advance already paid is not deducted here.
    """

    mode = ResolutionMode(mode)
    total = breakdown.total_amount
    if mode is ResolutionMode.SPLIT:
        if client_share_percent is None or not 0 <= client_share_percent <= 100:
            raise DomainValidationError(
                "A split needs client_share_percent between 0 and 100.",
                details={"client_share_percent": client_share_percent},
            )
        client_refund = percent_of(total, client_share_percent)
        artisan_payment = max(total - client_refund - breakdown.commission_amount, 0)
    elif mode is ResolutionMode.REFUND_CLIENT:
        client_share_percent = None
        client_refund, artisan_payment = total, 0
    else:
        client_share_percent = None
        client_refund, artisan_payment = 0, breakdown.artisan_payout

    return Resolution(
        mode=mode,
        client_share_percent=client_share_percent,
        client_refund=client_refund,
        artisan_payment=artisan_payment,
        platform_retained=total - client_refund - artisan_payment,
    )


def resolve_dispute(
    db: Session,
    dispute_id: int,
    mode: ResolutionMode | str,
    *,
    client_share_percent: int | None = None,
    note: str | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Dispute:
    """Apply an administrator's decision; the project always ends ``completed``."""

    actor = actor or "admin"
    dispute = get_dispute(db, dispute_id)
    project = get_project(db, dispute.project_id)
    with project_lock(db, project.id):
        db.refresh(dispute)
        db.refresh(project)
        require_status("dispute", "resolve", dispute.status, {DisputeStatus.OPEN})
        require_project_status(project, "resolve_dispute")
        escrow = escrow_service.get_escrow(db, dispute.escrow_id)
        db.refresh(escrow)
        resolution = compute_resolution(escrow_service.breakdown_of(escrow), mode, client_share_percent)
        escrow_service.settle_dispute(
            db,
            escrow,
            client_refund=resolution.client_refund,
            artisan_payment=resolution.artisan_payment,
            refund_all=resolution.mode is ResolutionMode.REFUND_CLIENT,
            actor=actor,
        )
        now = utcnow()
        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution = resolution.mode
        dispute.client_share_percent = resolution.client_share_percent
        dispute.client_refund = resolution.client_refund
        dispute.artisan_payment = resolution.artisan_payment
        dispute.platform_retained = resolution.platform_retained
        dispute.resolution_note = note
        dispute.resolved_by = actor
        dispute.resolved_at = now
        log_audit(
            db,
            actor=actor,
            action="DISPUTE_RESOLVED",
            entity="Dispute",
            entity_id=dispute.id,
            data={**resolution.as_dict(), "advance_paid": escrow.advance_paid},
        )
        project.closed_at = now
        set_project_status(
            db, project, ProjectStatus.COMPLETED, actor=actor, action="PROJECT_DISPUTE_CLOSED", data={"dispute_id": dispute.id}
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(dispute)
    logger.info("Dispute resolved", extra={"dispute_id": dispute.id, **resolution.as_dict()})
    quote = accepted_quote(db, project.id)
    payload = {"project_id": project.id, "dispute_id": dispute.id, **resolution.as_dict()}
    notify_safely(sink, project.client_id, "dispute_resolved", payload)
    notify_safely(sink, quote.provider_id if quote else None, "dispute_resolved", payload)
    return dispute


__all__ = ["Resolution", "compute_resolution", "resolve_dispute"]
