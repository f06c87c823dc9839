import asyncio

import pytest
from sqlalchemy import select

from app.models import AuditLog, Escrow, EscrowStatus, ProjectStatus
from app.services import escrow as escrow_service
from app.services.escrow import confirm_deposit, create_escrow, release_advance, update_for_new_amount
from app.services.fees import calculate_fees
from app.services.projects import create_project, raise_dispute
from app.utils.errors import ExternalServiceError, InvalidTransitionError, InvariantViolationError


def _event_kinds(escrow):
    return [event.kind for event in escrow.events]


def test_create_escrow_is_idempotent(db_session, make_user):
    client_user = make_user("client")
    project = create_project(db_session, client_user.id, "Toiture")

    first = create_escrow(db_session, project.id, 50_000, provider_is_verified=False)
    second = create_escrow(db_session, project.id, 80_000, provider_is_verified=True)

    assert first.id == second.id
    assert second.base_amount == 50_000
    assert second.status == EscrowStatus.PENDING
    assert second.advance_paid == 0


def test_accepting_a_quote_stages_a_pending_escrow(db_session, accepted_project):
    project, quote, escrow = accepted_project(amount=100_000, verified=True)

    assert project.status == ProjectStatus.QUOTE_ACCEPTED
    assert escrow.status == EscrowStatus.PENDING
    assert escrow.total_amount == 100_000
    assert escrow.advance_amount == 36_000
    assert _event_kinds(escrow) == ["CREATED"]


@pytest.mark.anyio
async def test_confirm_deposit_holds_funds(db_session, accepted_project, gateway, sink):
    project, quote, escrow = accepted_project()

    escrow = await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway, sink=sink)
    db_session.refresh(project)

    assert escrow.status == EscrowStatus.HELD
    assert escrow.payment_method == "wave"
    assert escrow.payment_reference.startswith("MBK-")
    assert escrow.held_at is not None
    assert project.status == ProjectStatus.IN_PROGRESS
    assert gateway.calls[0][0] == escrow.total_amount
    assert "payment_held" in sink.templates_for(quote.provider_id)
    assert "payment_held" in sink.templates_for(project.client_id)


@pytest.mark.anyio
async def test_declined_deposit_leaves_escrow_pending(db_session, accepted_project, gateway):
    project, _, escrow = accepted_project()
    gateway.success = False
    gateway.message = "Insufficient balance."

    with pytest.raises(ExternalServiceError) as excinfo:
        await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)

    db_session.refresh(escrow)
    db_session.refresh(project)
    assert excinfo.value.unavailable is False
    assert escrow.status == EscrowStatus.PENDING
    assert escrow.payment_reference is None
    assert project.status == ProjectStatus.QUOTE_ACCEPTED
    failures = db_session.scalars(select(AuditLog).where(AuditLog.action == "ESCROW_DEPOSIT_FAILED")).all()
    assert len(failures) == 1


@pytest.mark.anyio
async def test_gateway_timeout_parks_project_in_payment_pending(db_session, accepted_project, gateway):
    project, _, escrow = accepted_project()
    gateway.delay = 0.5

    with pytest.raises(ExternalServiceError) as excinfo:
        await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway, timeout=0.01)

    db_session.refresh(escrow)
    db_session.refresh(project)
    assert excinfo.value.unavailable is True
    assert escrow.status == EscrowStatus.PENDING
    assert project.status == ProjectStatus.PAYMENT_PENDING

    gateway.delay = 0
    escrow = await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)
    db_session.refresh(project)
    assert escrow.status == EscrowStatus.HELD
    assert project.status == ProjectStatus.IN_PROGRESS


@pytest.mark.anyio
async def test_concurrent_deposits_charge_once(db_session, accepted_project, gateway):
    _, _, escrow = accepted_project()
    gateway.delay = 0.05

    results = await asyncio.gather(
        confirm_deposit(db_session, escrow.id, "wave", gateway=gateway),
        confirm_deposit(db_session, escrow.id, "wave", gateway=gateway),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, InvalidTransitionError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert len(gateway.calls) == 1


@pytest.mark.anyio
async def test_amount_update_refused_while_deposit_is_charged(db_session, session_factory, accepted_project, gateway):
    _, _, escrow = accepted_project()
    refusals = []

    def renegotiate(amount):
        with session_factory() as other:
            try:
                update_for_new_amount(other, escrow.id, 150_000, provider_is_verified=False)
            except InvalidTransitionError as exc:
                refusals.append(exc)

    gateway.on_charge = renegotiate
    escrow = await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)

    assert len(refusals) == 1
    assert escrow.status == EscrowStatus.HELD
    assert escrow.total_amount == gateway.calls[0][0] == 100_000


@pytest.mark.anyio
async def test_deposit_refused_when_amount_moved_during_charge(db_session, session_factory, accepted_project, gateway):
    project, _, escrow = accepted_project()

    def reprice(amount):
        with session_factory() as other:
            stale = other.get(Escrow, escrow.id)
            for name, value in calculate_fees(150_000).as_dict().items():
                setattr(stale, name, value)
            other.commit()

    gateway.on_charge = reprice
    with pytest.raises(InvariantViolationError):
        await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)

    db_session.refresh(escrow)
    db_session.refresh(project)
    assert escrow.status == EscrowStatus.PENDING
    assert escrow.payment_reference is None
    assert project.status == ProjectStatus.QUOTE_ACCEPTED
    conflict = db_session.scalars(select(AuditLog).where(AuditLog.action == "ESCROW_DEPOSIT_CONFLICT")).one()
    assert conflict.data_json["charged_amount"] == 100_000


@pytest.mark.anyio
async def test_release_advance_once(db_session, funded_project, sink):
    _, quote, escrow = await funded_project(verified=True)

    escrow = release_advance(db_session, escrow.id, sink=sink)

    assert escrow.status == EscrowStatus.ADVANCE_PAID
    assert escrow.advance_paid == 36_000
    assert sink.templates_for(quote.provider_id) == ["advance_released"]

    with pytest.raises(InvalidTransitionError):
        release_advance(db_session, escrow.id)
    db_session.refresh(escrow)
    assert escrow.status == EscrowStatus.ADVANCE_PAID
    assert escrow.advance_paid == 36_000


@pytest.mark.anyio
async def test_release_advance_needs_a_configured_advance(db_session, funded_project):
    _, _, escrow = await funded_project(verified=False)

    with pytest.raises(InvalidTransitionError) as excinfo:
        release_advance(db_session, escrow.id)

    assert "No advance" in excinfo.value.message
    db_session.refresh(escrow)
    assert escrow.status == EscrowStatus.HELD


def test_release_advance_refused_while_pending(db_session, accepted_project):
    _, _, escrow = accepted_project(verified=True)

    with pytest.raises(InvalidTransitionError) as excinfo:
        release_advance(db_session, escrow.id)

    assert excinfo.value.current_status == "pending"
    db_session.refresh(escrow)
    assert escrow.status == EscrowStatus.PENDING
    assert escrow.advance_paid == 0


def test_update_for_new_amount_recomputes_breakdown(db_session, accepted_project):
    _, _, escrow = accepted_project(amount=100_000)

    escrow = update_for_new_amount(db_session, escrow.id, 150_000, provider_is_verified=False)

    assert escrow.base_amount == 150_000
    assert escrow.total_amount == 150_000
    assert escrow.artisan_payout == 108_000
    assert _event_kinds(escrow) == ["CREATED", "AMOUNT_UPDATED"]


@pytest.mark.anyio
async def test_update_for_new_amount_refused_once_held(db_session, funded_project):
    _, _, escrow = await funded_project()

    with pytest.raises(InvalidTransitionError):
        update_for_new_amount(db_session, escrow.id, 150_000, provider_is_verified=False)

    db_session.refresh(escrow)
    assert escrow.base_amount == 100_000


@pytest.mark.anyio
async def test_refund_returns_the_full_total(db_session, funded_project):
    _, _, escrow = await funded_project(verified=True)
    escrow = release_advance(db_session, escrow.id)
    escrow_service.freeze(db_session, escrow, actor="test", reason="quality")

    refunded = escrow_service.refund(db_session, escrow, actor="test")

    assert refunded == 100_000
    assert escrow.refunded_amount == escrow.total_amount
    assert escrow.status == EscrowStatus.REFUNDED
    db_session.rollback()


def test_refund_of_pending_escrow_returns_the_full_total(db_session, accepted_project):
    _, _, escrow = accepted_project()

    assert escrow_service.refund(db_session, escrow, actor="test") == 100_000
    db_session.rollback()


@pytest.mark.anyio
async def test_refund_escrow_cancels_the_project(db_session, funded_project, sink):
    project, quote, escrow = await funded_project()

    escrow = escrow_service.refund_escrow(db_session, escrow.id, reason="Artisan indisponible", actor="admin", sink=sink)
    db_session.refresh(project)

    assert escrow.status == EscrowStatus.REFUNDED
    assert escrow.refunded_amount == 100_000
    assert project.status == ProjectStatus.CANCELLED
    assert project.closed_at is not None
    assert sink.templates_for(project.client_id) == ["payment_refunded"]
    assert sink.templates_for(quote.provider_id) == ["project_cancelled"]
    assert _event_kinds(escrow)[-1] == "REFUNDED"


def test_refund_escrow_before_deposit(db_session, accepted_project):
    project, _, escrow = accepted_project()

    escrow = escrow_service.refund_escrow(db_session, escrow.id)
    db_session.refresh(project)

    assert escrow.status == EscrowStatus.REFUNDED
    assert project.status == ProjectStatus.CANCELLED


@pytest.mark.anyio
async def test_refund_escrow_refused_once_disputed(db_session, funded_project):
    project, _, escrow = await funded_project()
    raise_dispute(db_session, project.id, project.client_id, "Travaux non conformes")

    with pytest.raises(InvalidTransitionError):
        escrow_service.refund_escrow(db_session, escrow.id)

    db_session.refresh(escrow)
    assert escrow.status == EscrowStatus.FROZEN


@pytest.mark.anyio
async def test_refund_escrow_refused_after_advance(db_session, funded_project):
    project, _, escrow = await funded_project(verified=True)
    release_advance(db_session, escrow.id)

    with pytest.raises(InvalidTransitionError):
        escrow_service.refund_escrow(db_session, escrow.id)

    db_session.refresh(project)
    assert project.status == ProjectStatus.IN_PROGRESS


def test_freeze_refused_from_pending(db_session, accepted_project):
    _, _, escrow = accepted_project()

    with pytest.raises(InvalidTransitionError):
        escrow_service.freeze(db_session, escrow, actor="test")

    assert escrow.status == EscrowStatus.PENDING


@pytest.mark.anyio
async def test_release_full_payment_returns_remaining(db_session, funded_project):
    _, _, escrow = await funded_project(verified=True)
    escrow = release_advance(db_session, escrow.id)

    remaining = escrow_service.release_full_payment(db_session, escrow, actor="test")

    assert remaining == 72_000 - 36_000
    assert escrow.released_amount == 72_000
    assert escrow.status == EscrowStatus.RELEASED
    db_session.rollback()
