"""End-to-end marketplace flows over HTTP."""
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models import ApiScope, AuditLog


@pytest.fixture
def parties(make_user, headers_for):
    client_user = make_user("client")
    artisan = make_user("artisan", verified=True)
    return {
        "client": client_user,
        "artisan": artisan,
        "client_headers": headers_for(client_user, ApiScope.client),
        "artisan_headers": headers_for(artisan, ApiScope.artisan),
    }


async def _accepted_escrow(client, parties, amount=100_000):
    project = await client.post(
        "/projects",
        json={"title": "Menuiserie cuisine", "location": "Dakar"},
        headers=parties["client_headers"],
    )
    assert project.status_code == 201
    project_id = project.json()["id"]

    quote = await client.post(
        f"/projects/{project_id}/quotes",
        json={"amount": amount, "estimated_duration": "5 jours"},
        headers=parties["artisan_headers"],
    )
    assert quote.status_code == 201
    quote_id = quote.json()["id"]

    accepted = await client.post(f"/quotes/{quote_id}/accept", headers=parties["client_headers"])
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "quote_accepted"

    escrow = await client.get(f"/projects/{project_id}/escrow", headers=parties["client_headers"])
    assert escrow.status_code == 200
    return project_id, quote_id, escrow.json()


@pytest.mark.anyio
async def test_happy_path_to_completion(client, parties):
    project_id, _, escrow = await _accepted_escrow(client, parties)
    assert escrow["status"] == "pending"
    assert escrow["total_amount"] == 100_000
    assert escrow["advance_amount"] == 36_000
    assert "advance_paid" not in escrow
    assert "payment_reference" not in escrow

    held = await client.post(
        f"/escrows/{escrow['id']}/deposit", json={"payment_method": "wave"}, headers=parties["client_headers"]
    )
    assert held.status_code == 200
    assert held.json()["status"] == "held"
    assert held.json()["payment_method"] == "wave"

    requested = await client.post(f"/projects/{project_id}/completion-request", headers=parties["artisan_headers"])
    assert requested.json()["status"] == "completion_requested"

    completed = await client.post(f"/projects/{project_id}/completion-confirm", headers=parties["client_headers"])
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    escrow = await client.get(f"/projects/{project_id}/escrow", headers=parties["artisan_headers"])
    assert escrow.json()["status"] == "released"
    assert escrow.json()["released_amount"] == 72_000

    events = await client.get(f"/escrows/{escrow.json()['id']}/events", headers=parties["client_headers"])
    assert [e["kind"] for e in events.json()] == ["CREATED", "DEPOSIT_CONFIRMED", "PAYMENT_RELEASED"]

    inbox = await client.get("/notifications", headers=parties["artisan_headers"])
    templates = [n["template"] for n in inbox.json()]
    assert {"quote_accepted", "payment_held", "payment_released", "project_completed"} <= set(templates)


@pytest.mark.anyio
async def test_declined_deposit_is_retryable(client, parties, gateway):
    _, _, escrow = await _accepted_escrow(client, parties)
    gateway.success = False
    gateway.message = "Solde insuffisant."

    failed = await client.post(
        f"/escrows/{escrow['id']}/deposit", json={"payment_method": "wave"}, headers=parties["client_headers"]
    )
    assert failed.status_code == 502
    error = failed.json()["error"]
    assert error["code"] == "EXTERNAL_SERVICE_ERROR"
    assert error["details"]["retryable"] is True

    gateway.success = True
    retried = await client.post(
        f"/escrows/{escrow['id']}/deposit", json={"payment_method": "wave"}, headers=parties["client_headers"]
    )
    assert retried.status_code == 200
    assert retried.json()["status"] == "held"


@pytest.mark.anyio
async def test_cancel_after_deposit_is_a_policy_violation(client, parties):
    project_id, _, escrow = await _accepted_escrow(client, parties)
    await client.post(f"/escrows/{escrow['id']}/deposit", json={"payment_method": "wave"}, headers=parties["client_headers"])

    response = await client.post(
        f"/projects/{project_id}/cancel", json={"reason": "Trop long"}, headers=parties["client_headers"]
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "POLICY_VIOLATION"


@pytest.mark.anyio
async def test_admin_refund_cancels_the_project(client, parties, admin_headers):
    project_id, _, escrow = await _accepted_escrow(client, parties)
    await client.post(f"/escrows/{escrow['id']}/deposit", json={"payment_method": "wave"}, headers=parties["client_headers"])

    forbidden = await client.post(
        f"/escrows/{escrow['id']}/refund", json={"reason": "Remboursement"}, headers=parties["client_headers"]
    )
    assert forbidden.status_code == 403

    refunded = await client.post(
        f"/escrows/{escrow['id']}/refund", json={"reason": "Artisan indisponible"}, headers=admin_headers
    )
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"
    assert refunded.json()["refunded_amount"] == 100_000

    project = await client.get(f"/projects/{project_id}", headers=parties["client_headers"])
    assert project.json()["status"] == "cancelled"

    inbox = await client.get("/notifications", headers=parties["client_headers"])
    assert "payment_refunded" in [n["template"] for n in inbox.json()]


@pytest.mark.anyio
async def test_invalid_transition_answers_409(client, parties, admin_headers):
    _, _, escrow = await _accepted_escrow(client, parties)

    response = await client.post(f"/escrows/{escrow['id']}/release-advance", headers=admin_headers)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"]["current_status"] == "pending"


@pytest.mark.anyio
async def test_dispute_resolved_by_admin(client, parties, admin_headers):
    project_id, _, escrow = await _accepted_escrow(client, parties)
    await client.post(f"/escrows/{escrow['id']}/deposit", json={"payment_method": "card"}, headers=parties["client_headers"])
    advance = await client.post(f"/escrows/{escrow['id']}/release-advance", headers=admin_headers)
    assert advance.json()["advance_paid"] == 36_000

    dispute = await client.post(
        f"/projects/{project_id}/disputes", json={"reason": "Finitions bâclées"}, headers=parties["client_headers"]
    )
    assert dispute.status_code == 201
    frozen = await client.get(f"/projects/{project_id}/escrow", headers=parties["client_headers"])
    assert frozen.json()["status"] == "frozen"

    missing_share = await client.post(
        f"/disputes/{dispute.json()['id']}/resolve", json={"mode": "split"}, headers=admin_headers
    )
    assert missing_share.status_code == 422

    resolved = await client.post(
        f"/disputes/{dispute.json()['id']}/resolve",
        json={"mode": "split", "client_share_percent": 50, "note": "Moitié chacun"},
        headers=admin_headers,
    )
    assert resolved.status_code == 200
    body = resolved.json()
    assert (body["client_refund"], body["artisan_payment"], body["platform_retained"]) == (50_000, 40_000, 10_000)

    project = await client.get(f"/projects/{project_id}", headers=parties["client_headers"])
    assert project.json()["status"] == "completed"


@pytest.mark.anyio
async def test_stranger_cannot_accept_or_read_escrow(client, parties, make_user, headers_for):
    stranger = make_user("stranger")
    stranger_headers = headers_for(stranger, ApiScope.client)
    project_id, quote_id, _ = await _accepted_escrow(client, parties)

    accept = await client.post(f"/quotes/{quote_id}/accept", headers=stranger_headers)
    escrow = await client.get(f"/projects/{project_id}/escrow", headers=stranger_headers)

    assert accept.status_code == 403
    assert escrow.status_code == 403
    assert escrow.json()["error"]["code"] == "NOT_A_PARTY"


@pytest.mark.anyio
async def test_second_acceptance_over_http(client, parties, make_user, headers_for):
    rival = make_user("rival")
    rival_headers = headers_for(rival, ApiScope.artisan)
    project = await client.post("/projects", json={"title": "Électricité"}, headers=parties["client_headers"])
    project_id = project.json()["id"]
    first = await client.post(f"/projects/{project_id}/quotes", json={"amount": 60_000}, headers=parties["artisan_headers"])
    second = await client.post(f"/projects/{project_id}/quotes", json={"amount": 55_000}, headers=rival_headers)

    ok = await client.post(f"/quotes/{first.json()['id']}/accept", headers=parties["client_headers"])
    again = await client.post(f"/quotes/{first.json()['id']}/accept", headers=parties["client_headers"])
    refused = await client.post(f"/quotes/{second.json()['id']}/accept", headers=parties["client_headers"])

    assert ok.status_code == 200
    assert again.status_code == 200
    assert refused.status_code == 409

    listed = await client.get(f"/projects/{project_id}/quotes", headers=rival_headers)
    assert [q["status"] for q in listed.json()] == ["rejected"]


@pytest.mark.anyio
async def test_admin_registers_users(client, admin_headers, db_session):
    suffix = uuid4().hex[:8]
    response = await client.post(
        "/users",
        json={"username": f"fatou-{suffix}", "email": f"fatou-{suffix}@example.com", "phone_number": "+221 77 123 45 67"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    user_id = response.json()["id"]

    verified = await client.post(f"/users/{user_id}/verification", json={"is_verified": True}, headers=admin_headers)
    assert verified.json()["is_verified"] is True

    entry = db_session.scalars(select(AuditLog).where(AuditLog.action == "CREATE_USER")).one()
    assert entry.data_json["phone_number"] == "***4567"
    assert entry.data_json["email"].startswith("***@")


@pytest.mark.anyio
async def test_admin_expiry_endpoint(client, admin_headers):
    response = await client.post("/admin/projects/expire", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {"expired": []}
