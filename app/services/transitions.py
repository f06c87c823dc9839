"""Allowed source states for every transition, and the cross-record consistency check."""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from app.models.escrow import Escrow, EscrowStatus
from app.models.project import Project, ProjectStatus
from app.models.quote import Quote, QuoteStatus
from app.utils.errors import InvalidTransitionError, InvariantViolationError

E = EscrowStatus
P = ProjectStatus
Q = QuoteStatus

ESCROW_TRANSITIONS: dict[str, frozenset[EscrowStatus]] = {
    "confirm_deposit": frozenset({E.PENDING}),
    "release_advance": frozenset({E.HELD}),
    "release_full_payment": frozenset({E.HELD, E.ADVANCE_PAID}),
    "freeze": frozenset({E.HELD, E.ADVANCE_PAID}),
    "refund": frozenset({E.PENDING, E.HELD, E.FROZEN}),
    "update_for_new_amount": frozenset({E.PENDING}),
    "resolve_dispute": frozenset({E.FROZEN}),
}

QUOTE_TRANSITIONS: dict[str, frozenset[QuoteStatus]] = {
    "view": frozenset({Q.PENDING}),
    "accept": frozenset({Q.PENDING, Q.VIEWED}),
    "reject": frozenset({Q.PENDING, Q.VIEWED}),
    "abandon": frozenset({Q.PENDING, Q.VIEWED}),
    "revise": frozenset({Q.PENDING, Q.VIEWED}),
    "expire": frozenset({Q.PENDING, Q.VIEWED}),
}

PROJECT_TRANSITIONS: dict[str, frozenset[ProjectStatus]] = {
    "publish": frozenset({P.DRAFT}),
    "submit_quote": frozenset({P.OPEN, P.QUOTE_RECEIVED}),
    "accept_quote": frozenset({P.OPEN, P.QUOTE_RECEIVED}),
    "retry_escrow_creation": frozenset({P.PAYMENT_PENDING}),
    "confirm_deposit": frozenset({P.QUOTE_ACCEPTED, P.PAYMENT_PENDING}),
    "request_completion": frozenset({P.IN_PROGRESS}),
    "confirm_completion": frozenset({P.COMPLETION_REQUESTED}),
    "raise_dispute": frozenset({P.IN_PROGRESS, P.COMPLETION_REQUESTED}),
    "resolve_dispute": frozenset({P.DISPUTED}),
    "cancel": frozenset({P.DRAFT, P.OPEN, P.QUOTE_RECEIVED}),
    "refund": frozenset({P.QUOTE_ACCEPTED, P.PAYMENT_PENDING, P.IN_PROGRESS, P.COMPLETION_REQUESTED}),
    "expire": frozenset({P.OPEN, P.QUOTE_RECEIVED}),
}

# Escrow states each project status may coexist with. ``None`` means "no escrow row".
_ESCROW_FOR_PROJECT: dict[ProjectStatus, frozenset[EscrowStatus | None]] = {
    P.DRAFT: frozenset({None}),
    P.OPEN: frozenset({None}),
    P.QUOTE_RECEIVED: frozenset({None}),
    P.EXPIRED: frozenset({None}),
    P.QUOTE_ACCEPTED: frozenset({E.PENDING}),
    P.PAYMENT_PENDING: frozenset({None, E.PENDING}),
    P.IN_PROGRESS: frozenset({E.HELD, E.ADVANCE_PAID}),
    P.COMPLETION_REQUESTED: frozenset({E.HELD, E.ADVANCE_PAID}),
    P.DISPUTED: frozenset({E.FROZEN}),
    P.COMPLETED: frozenset({E.RELEASED, E.REFUNDED}),
    P.CANCELLED: frozenset({None, E.REFUNDED}),
}

_NO_ACCEPTED_QUOTE = frozenset({P.DRAFT, P.OPEN, P.QUOTE_RECEIVED, P.EXPIRED, P.CANCELLED})


def _expects_accepted_quote(project_status: ProjectStatus, escrow: Escrow | None) -> bool:
    # A project cancelled by an escrow refund keeps the quote it had accepted.
    if project_status == P.CANCELLED:
        return escrow is not None
    return project_status not in _NO_ACCEPTED_QUOTE


def _value(status: Enum | str | None) -> str:
    if status is None:
        return "none"
    return status.value if isinstance(status, Enum) else str(status)


def require_status(
    entity: str,
    action: str,
    current: Enum,
    allowed: Iterable[Enum],
    *,
    reason: str | None = None,
) -> None:
    allowed_set = frozenset(allowed)
    if current not in allowed_set:
        raise InvalidTransitionError(
            entity, action, _value(current), [_value(s) for s in allowed_set], reason=reason
        )


def require_escrow_status(escrow: Escrow, action: str) -> None:
    require_status("escrow", action, escrow.status, ESCROW_TRANSITIONS[action])


def require_quote_status(quote: Quote, action: str) -> None:
    require_status("quote", action, quote.status, QUOTE_TRANSITIONS[action])


def require_project_status(project: Project, action: str) -> None:
    require_status("project", action, project.status, PROJECT_TRANSITIONS[action])


def assert_consistent(project: Project, escrow: Escrow | None, accepted_quotes: list[Quote]) -> None:
    """Check that (project.status, escrow.status, accepted quote) is a legal combination."""

    escrow_status = escrow.status if escrow is not None else None
    problems: list[str] = []

    if len(accepted_quotes) > 1:
        problems.append(f"{len(accepted_quotes)} accepted quotes")
    expects_quote = _expects_accepted_quote(project.status, escrow)
    if not expects_quote and accepted_quotes:
        problems.append("accepted quote on a project that never accepted one")
    if expects_quote and not accepted_quotes:
        problems.append("no accepted quote")
    if escrow_status not in _ESCROW_FOR_PROJECT[project.status]:
        problems.append(f"escrow status {_value(escrow_status)}")

    if problems:
        raise InvariantViolationError(
            f"Project {project.id} in status '{project.status.value}' is inconsistent: {'; '.join(problems)}.",
            details={
                "project_id": project.id,
                "project_status": project.status.value,
                "escrow_status": _value(escrow_status),
                "accepted_quotes": [q.id for q in accepted_quotes],
            },
        )


__all__ = [
    "ESCROW_TRANSITIONS",
    "QUOTE_TRANSITIONS",
    "PROJECT_TRANSITIONS",
    "require_status",
    "require_escrow_status",
    "require_quote_status",
    "require_project_status",
    "assert_consistent",
]
