"""Escrow ledger: the funds held for a project and their state machine.

``create_escrow``, ``confirm_deposit``, ``release_advance``,
``update_for_new_amount`` and ``refund_escrow`` are complete units of work:
they take the project lock, commit and notify. ``release_full_payment``, ``freeze``, ``refund`` and
``settle_dispute`` mutate an escrow the caller already holds under
``project_lock`` and leave the commit to the project lifecycle, which moves
the project in the same transaction.

Every helper validates the current status before touching any field, so a
rejected call leaves the escrow exactly as it was.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.escrow import Escrow, EscrowEvent, EscrowStatus
from app.models.project import Project, ProjectStatus
from app.services.fees import FeeBreakdown, calculate_fees
from app.services.locks import deposit_lock, project_lock
from app.services.notifications import NotificationSink, notify_safely
from app.services.payment_gateway import PaymentGateway, PaymentResult, charge_with_timeout
from app.services.state import (
    accepted_quote,
    ensure_consistent,
    escrow_for_project,
    get_escrow,
    get_project,
    set_project_status,
)
from app.services.transitions import require_escrow_status, require_project_status
from app.utils.audit import log_audit
from app.utils.errors import (
    AlreadyExistsError,
    EngineError,
    ExternalServiceError,
    InvalidTransitionError,
    InvariantViolationError,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def _audit(db: Session, *, actor: str, action: str, escrow: Escrow, data: dict[str, Any]) -> None:
    log_audit(db, actor=actor, action=action, entity="Escrow", entity_id=escrow.id, data=data)


def _record_event(
    db: Session,
    escrow: Escrow,
    kind: str,
    *,
    from_status: EscrowStatus | None,
    data: dict[str, Any] | None = None,
) -> None:
    db.add(
        EscrowEvent(
            escrow_id=escrow.id,
            kind=kind,
            from_status=from_status.value if from_status is not None else None,
            to_status=escrow.status.value,
            data_json=data or {},
            at=utcnow(),
        )
    )


def _apply_breakdown(escrow: Escrow, breakdown: FeeBreakdown) -> None:
    for name, value in breakdown.as_dict().items():
        setattr(escrow, name, value)


def breakdown_of(escrow: Escrow) -> FeeBreakdown:
    return FeeBreakdown(
        base_amount=escrow.base_amount,
        urgent_surcharge=escrow.urgent_surcharge,
        total_amount=escrow.total_amount,
        commission_percent=escrow.commission_percent,
        commission_amount=escrow.commission_amount,
        tva_percent=escrow.tva_percent,
        tva_amount=escrow.tva_amount,
        artisan_payout=escrow.artisan_payout,
        advance_percent=escrow.advance_percent,
        advance_amount=escrow.advance_amount,
    )


def _fees_for(
    base_amount: int,
    *,
    provider_is_verified: bool,
    urgent_surcharge_percent: int,
    commission_percent: int | None,
) -> FeeBreakdown:
    settings = get_settings()
    return calculate_fees(
        base_amount,
        urgent_surcharge_percent=urgent_surcharge_percent,
        commission_percent=(
            commission_percent if commission_percent is not None else settings.DEFAULT_COMMISSION_PERCENT
        ),
        tva_percent=settings.TVA_PERCENT,
        provider_is_verified=provider_is_verified,
        advance_percent=settings.VERIFIED_ADVANCE_PERCENT,
    )


def add_escrow(
    db: Session,
    project_id: int,
    base_amount: int,
    *,
    provider_is_verified: bool,
    urgent_surcharge_percent: int = 0,
    commission_percent: int | None = None,
    actor: str = "system",
) -> Escrow:
    """Stage a pending escrow for ``project_id`` without committing.

    Raises ``AlreadyExistsError`` when the project already has one.
    """

    if escrow_for_project(db, project_id) is not None:
        raise AlreadyExistsError(
            f"Project {project_id} already has an escrow.", details={"project_id": project_id}
        )
    breakdown = _fees_for(
        base_amount,
        provider_is_verified=provider_is_verified,
        urgent_surcharge_percent=urgent_surcharge_percent,
        commission_percent=commission_percent,
    )
    escrow = Escrow(project_id=project_id, status=EscrowStatus.PENDING, advance_paid=0)
    _apply_breakdown(escrow, breakdown)
    db.add(escrow)
    db.flush()
    _record_event(db, escrow, "CREATED", from_status=None, data=breakdown.as_dict())
    _audit(db, actor=actor, action="ESCROW_CREATED", escrow=escrow, data=breakdown.as_dict())
    return escrow


def create_escrow(
    db: Session,
    project_id: int,
    base_amount: int,
    *,
    provider_is_verified: bool,
    urgent_surcharge_percent: int = 0,
    commission_percent: int | None = None,
    actor: str | None = None,
) -> Escrow:
    """Create the project's escrow, or return the one that already exists."""

    with project_lock(db, project_id):
        try:
            escrow = add_escrow(
                db,
                project_id,
                base_amount,
                provider_is_verified=provider_is_verified,
                urgent_surcharge_percent=urgent_surcharge_percent,
                commission_percent=commission_percent,
                actor=actor or "system",
            )
            db.commit()
        except AlreadyExistsError:
            existing = escrow_for_project(db, project_id)
            logger.info("Existing escrow reused", extra={"project_id": project_id, "escrow_id": existing.id})
            return existing
        except IntegrityError:
            db.rollback()
            existing = escrow_for_project(db, project_id)
            if existing is None:
                raise
            logger.info("Existing escrow reused after race", extra={"project_id": project_id, "escrow_id": existing.id})
            return existing
    db.refresh(escrow)
    logger.info(
        "Escrow created",
        extra={"escrow_id": escrow.id, "project_id": project_id, "total_amount": escrow.total_amount},
    )
    return escrow


def _mark_payment_pending(db: Session, project_id: int, escrow: Escrow, *, actor: str, error: ExternalServiceError) -> None:
    with project_lock(db, project_id):
        project = get_project(db, project_id)
        db.refresh(project)
        if project.status != ProjectStatus.QUOTE_ACCEPTED:
            return
        set_project_status(
            db,
            project,
            ProjectStatus.PAYMENT_PENDING,
            actor=actor,
            action="PROJECT_PAYMENT_PENDING",
            data={"escrow_id": escrow.id, "error": error.message},
        )
        ensure_consistent(db, project)
        db.commit()


def _deposit_in_flight(escrow: Escrow, action: str) -> None:
    if deposit_lock(escrow.project_id).locked():
        raise InvalidTransitionError(
            "escrow",
            action,
            escrow.status.value,
            [EscrowStatus.PENDING.value],
            reason="A deposit is in flight for this escrow.",
        )


def _charge_conflict(escrow: Escrow, amount: int, base_amount: int) -> EngineError | None:
    if escrow.status != EscrowStatus.PENDING:
        return InvalidTransitionError("escrow", "confirm_deposit", escrow.status.value, [EscrowStatus.PENDING.value])
    if escrow.total_amount != amount or escrow.base_amount != base_amount:
        return InvariantViolationError(
            f"Escrow {escrow.id} changed amount while the gateway charge was in flight.",
            details={
                "escrow_id": escrow.id,
                "charged_amount": amount,
                "total_amount": escrow.total_amount,
                "base_amount": escrow.base_amount,
            },
        )
    return None


async def confirm_deposit(
    db: Session,
    escrow_id: int,
    payment_method: str,
    *,
    gateway: PaymentGateway,
    actor: str | None = None,
    sink: NotificationSink | None = None,
    timeout: float | None = None,
) -> Escrow:
    """Charge the client through the gateway and move the escrow to ``held``.

    Concurrent deposits on one project are serialised; the loser sees the
    escrow already held and fails with ``InvalidTransitionError`` before the
    gateway is called a second time. On gateway failure the escrow stays
    pending. When the gateway is unreachable the project is parked in
    ``payment_pending`` so the client can retry later.

    The locked sections run in a worker thread so a contended project lock
    never blocks the event loop. If the escrow's status or amount moved while
    the charge was in flight the escrow stays pending, the conflict is
    audited and the error is raised.
    """

    actor = actor or "client"
    escrow = get_escrow(db, escrow_id)
    project_id = escrow.project_id

    def _validate() -> tuple[Project, int, int]:
        with project_lock(db, project_id):
            db.refresh(escrow)
            require_escrow_status(escrow, "confirm_deposit")
            project = get_project(db, project_id)
            db.refresh(project)
            require_project_status(project, "confirm_deposit")
            amount, base_amount = escrow.total_amount, escrow.base_amount
            db.commit()
        return project, amount, base_amount

    def _record_failure(action: str, data: dict[str, Any]) -> None:
        log_audit(db, actor=actor, action=action, entity="Escrow", entity_id=escrow.id, data=data)
        db.commit()

    def _hold(project: Project, amount: int, base_amount: int, result: PaymentResult) -> EngineError | None:
        with project_lock(db, project_id):
            db.refresh(escrow)
            db.refresh(project)
            conflict = _charge_conflict(escrow, amount, base_amount)
            if conflict is not None:
                return conflict
            escrow.status = EscrowStatus.HELD
            escrow.payment_method = payment_method
            escrow.payment_reference = result.reference
            escrow.gateway_fees = result.fees
            escrow.held_at = utcnow()
            _record_event(
                db,
                escrow,
                "DEPOSIT_CONFIRMED",
                from_status=EscrowStatus.PENDING,
                data={"method": payment_method, "amount": amount, "fees": result.fees},
            )
            _audit(
                db,
                actor=actor,
                action="ESCROW_HELD",
                escrow=escrow,
                data={
                    "amount": amount,
                    "method": payment_method,
                    "payment_reference": result.reference,
                    "transaction_id": result.transaction_id,
                },
            )
            set_project_status(
                db, project, ProjectStatus.IN_PROGRESS, actor=actor, action="PROJECT_STARTED", data={"escrow_id": escrow.id}
            )
            ensure_consistent(db, project)
            db.commit()
        return None

    async with deposit_lock(project_id):
        project, amount, base_amount = await asyncio.to_thread(_validate)

        try:
            result = await charge_with_timeout(
                gateway,
                amount,
                payment_method,
                {"escrow_id": escrow.id, "project_id": project_id},
                timeout=timeout if timeout is not None else get_settings().PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            )
        except ExternalServiceError as exc:
            await asyncio.to_thread(
                _record_failure,
                "ESCROW_DEPOSIT_FAILED",
                {"method": payment_method, "error": exc.message, "unavailable": exc.unavailable},
            )
            if exc.unavailable:
                await asyncio.to_thread(_mark_payment_pending, db, project_id, escrow, actor=actor, error=exc)
            raise

        conflict = await asyncio.to_thread(_hold, project, amount, base_amount, result)
        if conflict is not None:
            logger.error(
                "Escrow changed while the gateway charge was in flight",
                extra={
                    "escrow_id": escrow.id,
                    "status": escrow.status.value,
                    "charged_amount": amount,
                    "total_amount": escrow.total_amount,
                    "reference": result.reference,
                },
            )
            await asyncio.to_thread(
                _record_failure,
                "ESCROW_DEPOSIT_CONFLICT",
                {"charged_amount": amount, "payment_reference": result.reference, "error": conflict.message},
            )
            raise conflict

    db.refresh(escrow)
    logger.info(
        "Escrow deposit confirmed",
        extra={"escrow_id": escrow.id, "project_id": project_id, "method": payment_method, "amount": amount},
    )
    quote = accepted_quote(db, project_id)
    payload = {"project_id": project_id, "escrow_id": escrow.id, "total_amount": escrow.total_amount}
    notify_safely(sink, quote.provider_id if quote else None, "payment_held", payload)
    notify_safely(sink, project.client_id, "payment_held", payload)
    return escrow


def release_advance(
    db: Session,
    escrow_id: int,
    *,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Escrow:
    """Pay the verified artisan's advance out of a held escrow."""

    escrow = get_escrow(db, escrow_id)
    with project_lock(db, escrow.project_id):
        db.refresh(escrow)
        require_escrow_status(escrow, "release_advance")
        if escrow.advance_amount <= 0:
            raise InvalidTransitionError(
                "escrow",
                "release_advance",
                escrow.status.value,
                [EscrowStatus.HELD.value],
                reason="No advance is configured for this escrow.",
            )
        escrow.advance_paid = escrow.advance_amount
        escrow.status = EscrowStatus.ADVANCE_PAID
        _record_event(
            db, escrow, "ADVANCE_RELEASED", from_status=EscrowStatus.HELD, data={"amount": escrow.advance_amount}
        )
        _audit(
            db,
            actor=actor or "system",
            action="ESCROW_ADVANCE_RELEASED",
            escrow=escrow,
            data={"amount": escrow.advance_amount},
        )
        db.commit()
    db.refresh(escrow)
    logger.info("Escrow advance released", extra={"escrow_id": escrow.id, "amount": escrow.advance_paid})
    quote = accepted_quote(db, escrow.project_id)
    notify_safely(
        sink,
        quote.provider_id if quote else None,
        "advance_released",
        {"project_id": escrow.project_id, "escrow_id": escrow.id, "amount": escrow.advance_paid},
    )
    return escrow


def update_for_new_amount(
    db: Session,
    escrow_id: int,
    new_base_amount: int,
    *,
    provider_is_verified: bool,
    urgent_surcharge_percent: int | None = None,
    actor: str | None = None,
) -> Escrow:
    """Recompute the breakdown of a still-pending escrow for a renegotiated amount.

    Refused while a deposit for the project is being charged.

    The accepted quote is left untouched; the change is only visible in the
    escrow's event timeline.
    """

    escrow = get_escrow(db, escrow_id)
    with project_lock(db, escrow.project_id):
        db.refresh(escrow)
        require_escrow_status(escrow, "update_for_new_amount")
        _deposit_in_flight(escrow, "update_for_new_amount")
        if urgent_surcharge_percent is None:
            quote = accepted_quote(db, escrow.project_id)
            urgent_surcharge_percent = quote.urgent_surcharge_percent if quote else 0
        breakdown = _fees_for(
            new_base_amount,
            provider_is_verified=provider_is_verified,
            urgent_surcharge_percent=urgent_surcharge_percent,
            commission_percent=escrow.commission_percent,
        )
        previous = breakdown_of(escrow)
        _apply_breakdown(escrow, breakdown)
        _record_event(
            db,
            escrow,
            "AMOUNT_UPDATED",
            from_status=EscrowStatus.PENDING,
            data={
                "old_base_amount": previous.base_amount,
                "new_base_amount": breakdown.base_amount,
                "old_total_amount": previous.total_amount,
                "new_total_amount": breakdown.total_amount,
            },
        )
        _audit(
            db,
            actor=actor or "system",
            action="ESCROW_AMOUNT_UPDATED",
            escrow=escrow,
            data={"old_base_amount": previous.base_amount, "new_base_amount": breakdown.base_amount},
        )
        db.commit()
    db.refresh(escrow)
    logger.info(
        "Escrow amount updated",
        extra={"escrow_id": escrow.id, "base_amount": escrow.base_amount, "total_amount": escrow.total_amount},
    )
    return escrow


def release_full_payment(db: Session, escrow: Escrow, *, actor: str) -> int:
    """Release the artisan's payout; returns the amount paid out now (payout minus advance)."""

    require_escrow_status(escrow, "release_full_payment")
    previous = escrow.status
    remaining = escrow.artisan_payout - escrow.advance_paid
    escrow.status = EscrowStatus.RELEASED
    escrow.released_amount = escrow.artisan_payout
    escrow.released_at = utcnow()
    _record_event(
        db,
        escrow,
        "PAYMENT_RELEASED",
        from_status=previous,
        data={"remaining_released": remaining, "advance_paid": escrow.advance_paid},
    )
    _audit(
        db,
        actor=actor,
        action="ESCROW_RELEASED",
        escrow=escrow,
        data={"remaining_released": remaining, "artisan_payout": escrow.artisan_payout},
    )
    logger.info("Escrow released", extra={"escrow_id": escrow.id, "remaining_released": remaining})
    return remaining


def freeze(db: Session, escrow: Escrow, *, actor: str, reason: str | None = None) -> None:
    require_escrow_status(escrow, "freeze")
    previous = escrow.status
    escrow.status = EscrowStatus.FROZEN
    _record_event(db, escrow, "FROZEN", from_status=previous, data={"reason": reason})
    _audit(db, actor=actor, action="ESCROW_FROZEN", escrow=escrow, data={"reason": reason})
    logger.info("Escrow frozen", extra={"escrow_id": escrow.id})


def refund(db: Session, escrow: Escrow, *, actor: str, reason: str | None = None) -> int:
    """Return the full ``total_amount`` to the client; returns the refunded amount.

    Partial outcomes only come out of dispute resolution.
    """

    require_escrow_status(escrow, "refund")
    previous = escrow.status
    amount = escrow.total_amount
    escrow.status = EscrowStatus.REFUNDED
    escrow.refunded_amount = amount
    _record_event(db, escrow, "REFUNDED", from_status=previous, data={"amount": amount, "reason": reason})
    _audit(db, actor=actor, action="ESCROW_REFUNDED", escrow=escrow, data={"amount": amount, "reason": reason})
    logger.info("Escrow refunded", extra={"escrow_id": escrow.id, "amount": amount})
    return amount


def refund_escrow(
    db: Session,
    escrow_id: int,
    *,
    reason: str | None = None,
    actor: str | None = None,
    sink: NotificationSink | None = None,
) -> Escrow:
    """Administrative full refund: return the escrow to the client and cancel the project.

    Only for an engaged project whose escrow is still ``pending`` or
    ``held``; a frozen escrow is closed through dispute resolution instead.
    """

    actor = actor or "admin"
    escrow = get_escrow(db, escrow_id)
    project = get_project(db, escrow.project_id)
    with project_lock(db, escrow.project_id):
        db.refresh(escrow)
        db.refresh(project)
        require_project_status(project, "refund")
        require_escrow_status(escrow, "refund")
        _deposit_in_flight(escrow, "refund")
        amount = refund(db, escrow, actor=actor, reason=reason)
        project.closed_at = utcnow()
        set_project_status(
            db,
            project,
            ProjectStatus.CANCELLED,
            actor=actor,
            action="PROJECT_REFUNDED",
            data={"escrow_id": escrow.id, "amount": amount, "reason": reason},
        )
        ensure_consistent(db, project)
        db.commit()
    db.refresh(escrow)
    quote = accepted_quote(db, escrow.project_id)
    payload = {"project_id": escrow.project_id, "escrow_id": escrow.id, "amount": amount, "reason": reason}
    notify_safely(sink, project.client_id, "payment_refunded", payload)
    notify_safely(
        sink,
        quote.provider_id if quote else None,
        "project_cancelled",
        {"project_id": escrow.project_id, "reason": reason},
    )
    return escrow


def settle_dispute(
    db: Session,
    escrow: Escrow,
    *,
    client_refund: int,
    artisan_payment: int,
    refund_all: bool,
    actor: str,
) -> None:
    """Close a frozen escrow with an administrator's fund split."""

    require_escrow_status(escrow, "resolve_dispute")
    escrow.status = EscrowStatus.REFUNDED if refund_all else EscrowStatus.RELEASED
    escrow.refunded_amount = client_refund
    escrow.released_amount = artisan_payment
    escrow.released_at = utcnow()
    data = {"client_refund": client_refund, "artisan_payment": artisan_payment}
    _record_event(db, escrow, "DISPUTE_SETTLED", from_status=EscrowStatus.FROZEN, data=data)
    _audit(db, actor=actor, action="ESCROW_DISPUTE_SETTLED", escrow=escrow, data=data)
    logger.info("Escrow settled after dispute", extra={"escrow_id": escrow.id, **data})


__all__ = [
    "add_escrow",
    "breakdown_of",
    "create_escrow",
    "confirm_deposit",
    "release_advance",
    "update_for_new_amount",
    "release_full_payment",
    "freeze",
    "refund",
    "refund_escrow",
    "settle_dispute",
    "get_escrow",
]
