"""Scope enforcement regression tests."""
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models import ApiScope, AuditLog


@pytest.mark.anyio
async def test_missing_key(client):
    response = await client.get("/projects")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"


@pytest.mark.anyio
async def test_unknown_key(client):
    response = await client.get("/projects", headers={"X-API-Key": "not-a-key"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.anyio
async def test_client_cannot_manage_apikeys(client, make_user, headers_for):
    headers = headers_for(make_user("client"), ApiScope.client)
    response = await client.get("/apikeys/1", headers=headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_SCOPE"


@pytest.mark.anyio
async def test_client_cannot_quote(client, make_user, headers_for):
    headers = headers_for(make_user("client"), ApiScope.client)
    response = await client.post("/projects/1/quotes", json={"amount": 1_000}, headers=headers)
    assert response.status_code == 403


@pytest.mark.anyio
async def test_artisan_cannot_resolve_disputes(client, make_user, headers_for):
    headers = headers_for(make_user("artisan"), ApiScope.artisan)
    response = await client.post("/disputes/1/resolve", json={"mode": "pay_artisan"}, headers=headers)
    assert response.status_code == 403


@pytest.mark.anyio
async def test_admin_key_without_user_cannot_create_own_project(client, admin_headers):
    response = await client.post("/projects", json={"title": "Maçonnerie"}, headers=admin_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "USER_REQUIRED"


@pytest.mark.anyio
async def test_admin_issues_user_key(client, admin_headers, make_user):
    artisan = make_user("artisan")
    response = await client.post(
        "/apikeys",
        json={"name": f"artisan-{uuid4().hex[:8]}", "scope": "artisan", "user_id": artisan.id},
        headers=admin_headers,
    )
    assert response.status_code == 201
    raw = response.json()["key"]

    inbox = await client.get("/notifications", headers={"X-API-Key": raw})
    assert inbox.status_code == 200
    assert inbox.json() == []


@pytest.mark.anyio
async def test_admin_can_revoke_key(client, admin_headers, make_api_key, db_session):
    key_token = f"revokable-{uuid4().hex}"
    api_key = make_api_key(name=f"revokable-{uuid4().hex}", key=key_token)

    response = await client.delete(f"/apikeys/{api_key.id}", headers=admin_headers)
    assert response.status_code == 204

    rejected = await client.get("/projects", headers={"X-API-Key": key_token})
    assert rejected.status_code == 401

    entry = db_session.scalars(select(AuditLog).where(AuditLog.action == "REVOKE_API_KEY")).one()
    assert entry.entity_id == api_key.id
