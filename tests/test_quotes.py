import threading

import pytest
from sqlalchemy import select

from app.models import AuditLog, Escrow, EscrowStatus, ProjectStatus, Quote, QuoteStatus
from app.services import quotes as quotes_service
from app.services.escrow import confirm_deposit
from app.services.projects import create_project, retry_escrow_creation
from app.services.state import escrow_for_project
from app.utils.errors import DomainValidationError, InvalidTransitionError, PolicyViolationError


@pytest.fixture
def open_project(db_session, make_user):
    client_user = make_user("client")
    return create_project(db_session, client_user.id, "Plomberie salle de bain")


def test_first_quote_moves_project_to_quote_received(db_session, open_project, make_user, sink):
    artisan = make_user("artisan")

    quote = quotes_service.submit_quote(
        db_session, open_project.id, artisan.id, 45_000, labor_cost=30_000, materials_cost=15_000, sink=sink
    )
    db_session.refresh(open_project)

    assert quote.status == QuoteStatus.PENDING
    assert quote.urgent_surcharge_percent == 0
    assert open_project.status == ProjectStatus.QUOTE_RECEIVED
    assert sink.templates_for(open_project.client_id) == ["quote_received"]


def test_urgent_project_defaults_the_surcharge(db_session, make_user):
    client_user = make_user("client")
    artisan = make_user("artisan")
    project = create_project(db_session, client_user.id, "Fuite urgente", is_urgent=True)

    quote = quotes_service.submit_quote(db_session, project.id, artisan.id, 10_000)

    assert quote.urgent_surcharge_percent == 20


def test_client_cannot_quote_own_project(db_session, open_project):
    with pytest.raises(PolicyViolationError):
        quotes_service.submit_quote(db_session, open_project.id, open_project.client_id, 10_000)


def test_one_live_quote_per_provider(db_session, open_project, make_user):
    artisan = make_user("artisan")
    quotes_service.submit_quote(db_session, open_project.id, artisan.id, 10_000)

    with pytest.raises(PolicyViolationError):
        quotes_service.submit_quote(db_session, open_project.id, artisan.id, 12_000)


def test_unpriceable_quote_is_refused(db_session, open_project, make_user):
    artisan = make_user("artisan")

    with pytest.raises(DomainValidationError):
        quotes_service.submit_quote(db_session, open_project.id, artisan.id, 0)
    with pytest.raises(DomainValidationError):
        quotes_service.submit_quote(db_session, open_project.id, artisan.id, 10_000, labor_cost=-1)

    db_session.refresh(open_project)
    assert open_project.status == ProjectStatus.OPEN


def test_viewing_twice_is_a_no_op(db_session, quoted_project):
    _, quote = quoted_project()

    first = quotes_service.mark_quote_viewed(db_session, quote.id)
    second = quotes_service.mark_quote_viewed(db_session, quote.id)

    assert first.status == second.status == QuoteStatus.VIEWED
    views = db_session.scalars(select(AuditLog).where(AuditLog.action == "QUOTE_VIEWED")).all()
    assert len(views) == 1


def test_revise_resets_to_pending(db_session, quoted_project):
    _, quote = quoted_project(amount=50_000)
    quotes_service.mark_quote_viewed(db_session, quote.id)

    revised = quotes_service.revise_quote(db_session, quote.id, amount=55_000, message="Matériaux plus chers")

    assert revised.amount == 55_000
    assert revised.revision_count == 1
    assert revised.status == QuoteStatus.PENDING


def test_rejected_quote_cannot_be_revised(db_session, quoted_project, sink):
    _, quote = quoted_project()
    quotes_service.reject_quote(db_session, quote.id, reason="Trop cher", sink=sink)

    with pytest.raises(InvalidTransitionError):
        quotes_service.revise_quote(db_session, quote.id, amount=40_000)

    assert sink.templates_for(quote.provider_id) == ["quote_rejected"]


def test_abandoned_quote_cannot_be_accepted(db_session, quoted_project):
    project, quote = quoted_project()
    quotes_service.abandon_quote(db_session, quote.id)

    with pytest.raises(InvalidTransitionError):
        quotes_service.accept_quote(db_session, quote.id)

    db_session.refresh(project)
    assert project.status == ProjectStatus.QUOTE_RECEIVED
    assert escrow_for_project(db_session, project.id) is None


def test_accept_rejects_the_other_quotes(db_session, quoted_project, make_user, sink):
    project, chosen = quoted_project(amount=80_000)
    rival = make_user("rival")
    other = quotes_service.submit_quote(db_session, project.id, rival.id, 70_000)

    project = quotes_service.accept_quote(db_session, chosen.id, sink=sink)
    db_session.refresh(other)

    assert project.status == ProjectStatus.QUOTE_ACCEPTED
    assert other.status == QuoteStatus.REJECTED
    assert other.rejection_reason
    escrow = escrow_for_project(db_session, project.id)
    assert escrow.status == EscrowStatus.PENDING
    assert escrow.base_amount == 80_000
    assert sink.templates_for(chosen.provider_id) == ["quote_accepted"]
    assert sink.templates_for(rival.id) == ["quote_rejected"]


def test_accepting_the_same_quote_twice_is_idempotent(db_session, quoted_project):
    _, quote = quoted_project()
    project = quotes_service.accept_quote(db_session, quote.id)

    again = quotes_service.accept_quote(db_session, quote.id)

    assert again.id == project.id
    assert again.status == ProjectStatus.QUOTE_ACCEPTED
    accepted = db_session.scalars(select(AuditLog).where(AuditLog.action == "QUOTE_ACCEPTED")).all()
    assert len(accepted) == 1


def test_second_acceptance_is_refused(db_session, quoted_project, make_user):
    project, first = quoted_project()
    second = quotes_service.submit_quote(db_session, project.id, make_user("rival").id, 90_000)
    quotes_service.accept_quote(db_session, first.id)

    with pytest.raises(InvalidTransitionError) as excinfo:
        quotes_service.accept_quote(db_session, second.id)

    assert f"Quote {first.id} is already accepted" in excinfo.value.message
    db_session.refresh(first)
    db_session.refresh(second)
    assert first.status == QuoteStatus.ACCEPTED
    assert second.status == QuoteStatus.REJECTED
    assert escrow_for_project(db_session, project.id).base_amount == first.amount


def test_racing_acceptances_engage_one_quote(db_session, session_factory, quoted_project, make_user):
    project, first = quoted_project()
    second = quotes_service.submit_quote(db_session, project.id, make_user("rival").id, 90_000)
    barrier = threading.Barrier(2)
    accepted, refused = [], []

    def accept(quote_id):
        with session_factory() as session:
            barrier.wait(timeout=5)
            try:
                quotes_service.accept_quote(session, quote_id)
            except InvalidTransitionError as exc:
                refused.append((quote_id, exc))
            else:
                accepted.append(quote_id)

    threads = [threading.Thread(target=accept, args=(quote.id,)) for quote in (first, second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(accepted) == 1
    assert len(refused) == 1
    db_session.expire_all()
    statuses = db_session.scalars(select(Quote.status).where(Quote.project_id == project.id)).all()
    assert sorted(s.value for s in statuses) == ["accepted", "rejected"]
    escrows = db_session.scalars(select(Escrow).where(Escrow.project_id == project.id)).all()
    assert len(escrows) == 1
    winner = first if accepted[0] == first.id else second
    assert escrows[0].base_amount == winner.amount


def _broken_add_escrow(*args, **kwargs):
    raise DomainValidationError("fee policy unavailable")


@pytest.mark.anyio
async def test_deferred_escrow_is_retried(db_session, quoted_project, gateway, monkeypatch):
    project, quote = quoted_project()
    monkeypatch.setattr(quotes_service, "add_escrow", _broken_add_escrow)

    project = quotes_service.accept_quote(db_session, quote.id)

    assert project.status == ProjectStatus.PAYMENT_PENDING
    assert escrow_for_project(db_session, project.id) is None
    deferred = db_session.scalars(select(AuditLog).where(AuditLog.action == "ESCROW_CREATION_DEFERRED")).all()
    assert len(deferred) == 1

    project = retry_escrow_creation(db_session, project.id)
    escrow = escrow_for_project(db_session, project.id)
    assert project.status == ProjectStatus.PAYMENT_PENDING
    assert escrow.status == EscrowStatus.PENDING

    assert retry_escrow_creation(db_session, project.id).status == ProjectStatus.PAYMENT_PENDING

    await confirm_deposit(db_session, escrow.id, "wave", gateway=gateway)
    db_session.refresh(project)
    assert project.status == ProjectStatus.IN_PROGRESS
