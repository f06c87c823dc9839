"""Quote negotiation: artisans' priced offers and the client's single acceptance."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.project import Project, ProjectStatus
from app.models.quote import LIVE_QUOTE_STATUSES, Quote, QuoteStatus
from app.models.user import User
from app.services.escrow import add_escrow
from app.services.fees import calculate_fees
from app.services.locks import project_lock
from app.services.notifications import NotificationSink, notify_safely
from app.services.state import (
    accepted_quote,
    ensure_consistent,
    escrow_for_project,
    get_project,
    get_quote,
    set_project_status,
)
from app.services.transitions import require_project_status, require_quote_status
from app.utils.audit import log_audit
from app.utils.errors import (
    DomainValidationError,
    EngineError,
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
)

logger = logging.getLogger(__name__)


def _audit(db: Session, *, actor: str, action: str, quote: Quote, data: dict[str, Any]) -> None:
    log_audit(db, actor=actor, action=action, entity="Quote", entity_id=quote.id, data=data)


def _validate_amounts(amount: int, urgent_surcharge_percent: int, labor_cost: int | None, materials_cost: int | None) -> None:
    # Runs the calculator so an unpriceable quote is refused before anyone can accept it.
    calculate_fees(amount, urgent_surcharge_percent=urgent_surcharge_percent)
    for name, value in (("labor_cost", labor_cost), ("materials_cost", materials_cost)):
        if value is not None and value < 0:
            raise DomainValidationError(f"{name} must be >= 0.", details={name: value})


def _get_provider(db: Session, provider_id: int) -> User:
    provider = db.get(User, provider_id)
    if provider is None:
        raise NotFoundError("User", provider_id)
    return provider


def list_quotes(db: Session, project_id: int) -> list[Quote]:
    get_project(db, project_id)
    return list(db.scalars(select(Quote).where(Quote.project_id == project_id).order_by(Quote.id)).all())


def submit_quote(
    db: Session,
    project_id: int,
    provider_id: int,
    amount: int,
    *,
    urgent_surcharge_percent: int | None = None,
    labor_cost: int | None = None,
    materials_cost: int | None = None,
    message: str | None = None,
    estimated_duration: str | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Quote:
    """Record an artisan's offer on an open project.

    Urgent projects default to the configured urgent surcharge. A provider
    keeps at most one live quote per project; use ``revise_quote`` to change it.
    """

    project = get_project(db, project_id)
    provider = _get_provider(db, provider_id)
    with project_lock(db, project_id):
        db.refresh(project)
        require_project_status(project, "submit_quote")
        if provider.id == project.client_id:
            raise PolicyViolationError(
                "A client cannot quote on their own project.", details={"project_id": project_id}
            )
        live = db.scalars(
            select(Quote.id).where(
                Quote.project_id == project_id,
                Quote.provider_id == provider_id,
                Quote.status.in_(LIVE_QUOTE_STATUSES),
            )
        ).first()
        if live is not None:
            raise PolicyViolationError(
                "This provider already has a live quote on the project.",
                details={"project_id": project_id, "quote_id": live},
            )
        if urgent_surcharge_percent is None:
            urgent_surcharge_percent = get_settings().URGENT_SURCHARGE_PERCENT if project.is_urgent else 0
        _validate_amounts(amount, urgent_surcharge_percent, labor_cost, materials_cost)

        quote = Quote(
            project_id=project_id,
            provider_id=provider_id,
            amount=amount,
            urgent_surcharge_percent=urgent_surcharge_percent,
            labor_cost=labor_cost,
            materials_cost=materials_cost,
            message=message,
            estimated_duration=estimated_duration,
            status=QuoteStatus.PENDING,
        )
        db.add(quote)
        db.flush()
        _audit(
            db,
            actor=actor or f"user:{provider_id}",
            action="QUOTE_SUBMITTED",
            quote=quote,
            data={"project_id": project_id, "amount": amount, "urgent_surcharge_percent": urgent_surcharge_percent},
        )
        if project.status == ProjectStatus.OPEN:
            set_project_status(
                db,
                project,
                ProjectStatus.QUOTE_RECEIVED,
                actor=actor or f"user:{provider_id}",
                action="PROJECT_QUOTE_RECEIVED",
                data={"quote_id": quote.id},
            )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(quote)
    logger.info("Quote submitted", extra={"quote_id": quote.id, "project_id": project_id, "amount": amount})
    notify_safely(sink, project.client_id, "quote_received", {"project_id": project_id, "quote_id": quote.id, "amount": amount})
    return quote


def mark_quote_viewed(db: Session, quote_id: int, *, actor: str | None = None) -> Quote:
    """Record that the client opened the quote. Viewing it again changes nothing."""

    quote = get_quote(db, quote_id)
    with project_lock(db, quote.project_id):
        db.refresh(quote)
        if quote.status == QuoteStatus.VIEWED:
            return quote
        require_quote_status(quote, "view")
        quote.status = QuoteStatus.VIEWED
        _audit(db, actor=actor or "client", action="QUOTE_VIEWED", quote=quote, data={})
        db.commit()
    db.refresh(quote)
    return quote


def reject_quote(
    db: Session,
    quote_id: int,
    *,
    reason: str | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Quote:
    quote = get_quote(db, quote_id)
    with project_lock(db, quote.project_id):
        db.refresh(quote)
        require_quote_status(quote, "reject")
        quote.status = QuoteStatus.REJECTED
        quote.rejection_reason = reason
        _audit(db, actor=actor or "client", action="QUOTE_REJECTED", quote=quote, data={"reason": reason})
        db.commit()
    db.refresh(quote)
    logger.info("Quote rejected", extra={"quote_id": quote.id, "project_id": quote.project_id})
    notify_safely(
        sink, quote.provider_id, "quote_rejected", {"project_id": quote.project_id, "quote_id": quote.id, "reason": reason}
    )
    return quote


def abandon_quote(db: Session, quote_id: int, *, actor: str | None = None) -> Quote:
    """The provider withdraws a quote the client has not acted on."""

    quote = get_quote(db, quote_id)
    with project_lock(db, quote.project_id):
        db.refresh(quote)
        require_quote_status(quote, "abandon")
        quote.status = QuoteStatus.ABANDONED
        _audit(db, actor=actor or f"user:{quote.provider_id}", action="QUOTE_ABANDONED", quote=quote, data={})
        db.commit()
    db.refresh(quote)
    logger.info("Quote abandoned", extra={"quote_id": quote.id, "project_id": quote.project_id})
    return quote


def revise_quote(
    db: Session,
    quote_id: int,
    *,
    amount: int,
    urgent_surcharge_percent: int | None = None,
    labor_cost: int | None = None,
    materials_cost: int | None = None,
    message: str | None = None,
    estimated_duration: str | None = None,
    actor: str | None = None,
) -> Quote:
    """Change the price of a quote that has not been decided yet.

    A revised quote goes back to ``pending`` so the client reviews it again.
    """

    quote = get_quote(db, quote_id)
    with project_lock(db, quote.project_id):
        db.refresh(quote)
        require_quote_status(quote, "revise")
        surcharge = quote.urgent_surcharge_percent if urgent_surcharge_percent is None else urgent_surcharge_percent
        _validate_amounts(amount, surcharge, labor_cost, materials_cost)
        old_amount = quote.amount
        quote.amount = amount
        quote.urgent_surcharge_percent = surcharge
        if labor_cost is not None:
            quote.labor_cost = labor_cost
        if materials_cost is not None:
            quote.materials_cost = materials_cost
        if message is not None:
            quote.message = message
        if estimated_duration is not None:
            quote.estimated_duration = estimated_duration
        quote.revision_count += 1
        quote.status = QuoteStatus.PENDING
        _audit(
            db,
            actor=actor or f"user:{quote.provider_id}",
            action="QUOTE_REVISED",
            quote=quote,
            data={"old_amount": old_amount, "new_amount": amount, "revision": quote.revision_count},
        )
        db.commit()
    db.refresh(quote)
    logger.info("Quote revised", extra={"quote_id": quote.id, "old_amount": old_amount, "new_amount": amount})
    return quote


def _stage_escrow(db: Session, project: Project, quote: Quote, *, actor: str) -> bool:
    provider = db.get(User, quote.provider_id)
    try:
        add_escrow(
            db,
            project.id,
            quote.amount,
            provider_is_verified=bool(provider and provider.is_verified),
            urgent_surcharge_percent=quote.urgent_surcharge_percent,
            actor=actor,
        )
    except EngineError as exc:
        logger.warning(
            "Escrow creation deferred after quote acceptance",
            extra={"project_id": project.id, "quote_id": quote.id, "error": exc.message},
        )
        log_audit(
            db,
            actor=actor,
            action="ESCROW_CREATION_DEFERRED",
            entity="Project",
            entity_id=project.id,
            data={"quote_id": quote.id, "error_code": exc.code, "error": exc.message},
        )
        return False
    return True


def accept_quote(
    db: Session,
    quote_id: int,
    *,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Project:
    """Accept one quote for its project and open the escrow in the same commit.

    Every other live quote is rejected. If the escrow cannot be created the
    project lands in ``payment_pending`` with no escrow, and
    ``retry_escrow_creation`` picks it up from there. Accepting the quote that
    is already accepted returns the project unchanged.
    """

    actor = actor or "client"
    quote = get_quote(db, quote_id)
    project = get_project(db, quote.project_id)
    with project_lock(db, project.id):
        db.refresh(quote)
        db.refresh(project)
        current = accepted_quote(db, project.id)
        if current is not None:
            if current.id == quote.id:
                logger.info("Quote already accepted", extra={"quote_id": quote.id, "project_id": project.id})
                return project
            raise InvalidTransitionError(
                "quote",
                "accept",
                quote.status.value,
                [s.value for s in LIVE_QUOTE_STATUSES],
                reason=f"Quote {current.id} is already accepted for this project.",
            )
        require_project_status(project, "accept_quote")
        require_quote_status(quote, "accept")

        quote.status = QuoteStatus.ACCEPTED
        _audit(db, actor=actor, action="QUOTE_ACCEPTED", quote=quote, data={"project_id": project.id, "amount": quote.amount})
        rejected: list[Quote] = []
        others = db.scalars(
            select(Quote).where(
                Quote.project_id == project.id,
                Quote.id != quote.id,
                Quote.status.in_(LIVE_QUOTE_STATUSES),
            )
        ).all()
        for other in others:
            other.status = QuoteStatus.REJECTED
            other.rejection_reason = "Another quote was accepted."
            _audit(db, actor=actor, action="QUOTE_REJECTED", quote=other, data={"accepted_quote_id": quote.id})
            rejected.append(other)
        db.flush()

        if _stage_escrow(db, project, quote, actor=actor):
            set_project_status(
                db, project, ProjectStatus.QUOTE_ACCEPTED, actor=actor, action="PROJECT_QUOTE_ACCEPTED", data={"quote_id": quote.id}
            )
        else:
            set_project_status(
                db, project, ProjectStatus.PAYMENT_PENDING, actor=actor, action="PROJECT_PAYMENT_PENDING", data={"quote_id": quote.id}
            )
        ensure_consistent(db, project)
        db.commit()

    db.refresh(project)
    escrow = escrow_for_project(db, project.id)
    logger.info(
        "Quote accepted",
        extra={
            "quote_id": quote.id,
            "project_id": project.id,
            "project_status": project.status.value,
            "escrow_id": escrow.id if escrow else None,
        },
    )
    notify_safely(
        sink,
        quote.provider_id,
        "quote_accepted",
        {"project_id": project.id, "quote_id": quote.id, "escrow_id": escrow.id if escrow else None},
    )
    for other in rejected:
        notify_safely(
            sink, other.provider_id, "quote_rejected", {"project_id": project.id, "quote_id": other.id, "reason": other.rejection_reason}
        )
    return project


__all__ = [
    "list_quotes",
    "submit_quote",
    "mark_quote_viewed",
    "reject_quote",
    "abandon_quote",
    "revise_quote",
    "accept_quote",
]
