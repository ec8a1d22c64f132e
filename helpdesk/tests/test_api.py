from __future__ import annotations

import base64

import httpx
import pytest
import pytest_asyncio

from core.api import create_api_app

ADMIN = {"x-api-key": "test-key", "x-actor-id": "agent-1", "x-actor-role": "agent"}


@pytest_asyncio.fixture
async def client(helpdesk):
    transport = httpx.ASGITransport(app=create_api_app(helpdesk))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.mark.asyncio
async def test_health_and_auth(client) -> None:
    assert (await client.get("/health")).json() == {"status": "ok"}
    assert (await client.get("/api/tickets")).status_code == 401
    assert (await client.get("/api/tickets", headers={"x-api-key": "nope"})).status_code == 401


@pytest.mark.asyncio
async def test_ticket_lifecycle_over_http(client) -> None:
    created = await client.post("/api/tickets", json={"title": "VPN down"}, headers=ADMIN)
    assert created.status_code == 201
    ticket = created.json()
    assert ticket["status"] == "open"
    assert ticket["requester_id"] == "agent-1"
    assert ticket["display_id"] == "2025/03/10/001"

    started = await client.patch(
        f"/api/tickets/{ticket['id']}", json={"field": "status", "value": "in_progress"}, headers=ADMIN
    )
    assert started.json()["status"] == "in_progress"

    paused = await client.post(f"/api/tickets/{ticket['id']}/pause", headers=ADMIN)
    assert paused.json()["is_paused"] is True

    conflict = await client.post(f"/api/tickets/{ticket['id']}/pause", headers=ADMIN)
    assert conflict.status_code == 409
    assert conflict.json()["success"] is False
    assert conflict.json()["error"] == "invalid_pause_state"

    resumed = await client.post(f"/api/tickets/{ticket['id']}/resume", headers=ADMIN)
    assert resumed.json()["is_paused"] is False

    elapsed = (await client.get(f"/api/tickets/{ticket['id']}/elapsed", headers=ADMIN)).json()
    assert len(elapsed["pauses"]) == 1
    assert elapsed["pauses"][0]["resumed_at"] is not None

    resolved = await client.post(f"/api/tickets/{ticket['id']}/resolve", headers=ADMIN)
    assert resolved.json()["status"] == "resolved"
    assert resolved.json()["closed_at"] is not None

    reopened = await client.patch(
        f"/api/tickets/{ticket['id']}", json={"field": "status", "value": "open"}, headers=ADMIN
    )
    assert reopened.status_code == 409
    assert reopened.json()["error"] == "invalid_transition"


@pytest.mark.asyncio
async def test_actor_header_required(client) -> None:
    response = await client.post("/api/tickets", json={"title": "x"}, headers={"x-api-key": "test-key"})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_missing_ticket_is_404(client) -> None:
    response = await client.get("/api/tickets/missing", headers=ADMIN)
    assert response.status_code == 404
    assert response.json()["error"] == "ticket_not_found"


@pytest.mark.asyncio
async def test_approval_routes(client) -> None:
    created = (
        await client.post("/api/tickets", json={"title": "New laptop", "needs_approval": True}, headers=ADMIN)
    ).json()
    assert created["status"] == "pending_approval"

    rejected = await client.post(f"/api/tickets/{created['id']}/reject", json={"reason": "budget"}, headers=ADMIN)
    assert rejected.json()["status"] == "rejected"

    again = await client.post(f"/api/tickets/{created['id']}/approve", headers=ADMIN)
    assert again.status_code == 409
    assert again.json()["error"] == "not_pending_approval"


@pytest.mark.asyncio
async def test_messages_with_attachment(client) -> None:
    ticket = (await client.post("/api/tickets", json={"title": "Screen"}, headers=ADMIN)).json()
    posted = await client.post(
        f"/api/tickets/{ticket['id']}/messages",
        json={
            "body": "photo attached",
            "attachments": [{"file_name": "photo.jpg", "content_base64": base64.b64encode(b"jpeg").decode()}],
        },
        headers=ADMIN,
    )
    assert posted.status_code == 201
    message = posted.json()
    assert message["attachments"][0]["file_name"] == "photo.jpg"

    forbidden = await client.patch(
        f"/api/messages/{message['id']}",
        json={"body": "changed"},
        headers={"x-api-key": "test-key", "x-actor-id": "user-9"},
    )
    assert forbidden.status_code == 403

    bad = await client.post(
        f"/api/tickets/{ticket['id']}/messages",
        json={"attachments": [{"file_name": "x.bin", "content_base64": "***"}]},
        headers=ADMIN,
    )
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_webhook_receive_over_http(client) -> None:
    created = await client.post("/api/webhooks", json={"name": "Grafana"}, headers=ADMIN)
    assert created.status_code == 201
    webhook = created.json()
    secret = webhook["secret_key"]
    assert secret

    denied = await client.post(
        f"/api/webhooks/receive/{webhook['token']}",
        json={"title": "CPU high"},
        headers={"x-webhook-secret": "wrong"},
    )
    assert denied.status_code == 401
    assert denied.json()["error"] == "authentication_failed"

    malformed = await client.post(
        f"/api/webhooks/receive/{webhook['token']}",
        content=b"{",
        headers={"x-webhook-secret": secret, "content-type": "application/json"},
    )
    assert malformed.status_code == 400

    accepted = await client.post(
        f"/api/webhooks/receive/{webhook['token']}",
        json={"title": "CPU high", "priority": "critical"},
        headers={"x-webhook-secret": secret},
    )
    assert accepted.status_code == 201
    body = accepted.json()
    assert body["success"] is True
    assert body["status"] == "open"

    ticket = (await client.get(f"/api/tickets/{body['ticket_id']}", headers=ADMIN)).json()
    assert ticket["title"] == "CPU high"
    assert ticket["priority"] == "high"

    detail = (await client.get(f"/api/webhooks/{webhook['id']}", headers=ADMIN)).json()
    assert "secret_key" not in detail
    assert detail["stats"]["total_calls"] == 3
    assert detail["stats"]["success_calls"] == 1
    assert detail["stats"]["error_calls"] == 2

    logs = (await client.get(f"/api/webhooks/{webhook['id']}/logs", headers=ADMIN)).json()["items"]
    assert sorted(log["status"] for log in logs) == ["error", "error", "success"]


@pytest.mark.asyncio
async def test_unknown_webhook_token(client) -> None:
    response = await client.post("/api/webhooks/receive/nope", json={"title": "x"})
    assert response.status_code == 401
    assert response.json()["error"] == "authentication_failed"

    unmatched = (await client.get("/api/webhooks/unmatched-logs", headers=ADMIN)).json()["items"]
    assert len(unmatched) == 1
    assert unmatched[0]["webhook_id"] is None
    assert unmatched[0]["token_hint"] == "nope"
    assert unmatched[0]["reason"] == "unknown_or_inactive"


@pytest.mark.asyncio
async def test_status_patch_cannot_schedule(client) -> None:
    ticket = (await client.post("/api/tickets", json={"title": "Later"}, headers=ADMIN)).json()
    response = await client.patch(
        f"/api/tickets/{ticket['id']}", json={"field": "status", "value": "scheduled"}, headers=ADMIN
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_schedule"
