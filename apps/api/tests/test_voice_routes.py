"""HTTP tests for the voice token endpoints."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from expense_api.db.storage import get_token_service
from expense_api.main import app
from expense_api.services.blob_store import BlobStoreError, MemoryBlobStore
from expense_api.services.voice_tokens import VOICE_WORDS, TokenService

ALICE = {"X-User-Email": "alice@example.com"}
NOW = datetime(2026, 10, 18, 14, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


class UnavailableStore(MemoryBlobStore):
    async def create_container_if_not_exists(self) -> None:
        raise BlobStoreError("storage account unreachable")


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def token_service(clock):
    service = TokenService(MemoryBlobStore(), clock=clock)
    app.dependency_overrides[get_token_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_token_service, None)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.mark.asyncio
async def test_token_endpoints_require_identity(token_service, client):
    for method in ("POST", "GET", "DELETE"):
        response = await client.request(method, "/api/voice/token")
        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized: Please log in first"}


@pytest.mark.asyncio
async def test_issue_query_validate_revoke_flow(token_service, client):
    issued = await client.post("/api/voice/token", headers=ALICE)

    assert issued.status_code == 200
    body = issued.json()
    assert body["success"] is True
    assert body["token"].lower() in VOICE_WORDS
    assert body["token"] == body["token"].upper()
    assert body["validForMinutes"] == 15
    assert _parse(body["expiresAt"]) == NOW + timedelta(minutes=15)

    status = await client.get("/api/voice/token", headers=ALICE)
    assert status.json() == {
        "success": True,
        "hasActiveToken": True,
        "token": body["token"],
        "expiresAt": body["expiresAt"],
        "remainingSeconds": 900,
    }

    validated = await client.post("/api/voice/token/validate", json={"token": body["token"].lower()})
    assert validated.json() == {
        "valid": True,
        "userId": "alice@example.com",
        "userEmail": "alice@example.com",
    }

    revoked = await client.delete("/api/voice/token", headers=ALICE)
    assert revoked.json()["wasInvalidated"] is True

    again = await client.delete("/api/voice/token", headers=ALICE)
    assert again.json()["wasInvalidated"] is False

    status = await client.get("/api/voice/token", headers=ALICE)
    assert status.json()["hasActiveToken"] is False
    assert status.json()["token"] is None

    rejected = await client.post("/api/voice/token/validate", json={"token": body["token"]})
    assert rejected.json() == {"valid": False}


@pytest.mark.asyncio
async def test_validate_does_not_distinguish_expired_from_unknown(token_service, clock, client):
    issued = await client.post("/api/voice/token", headers=ALICE)
    token = issued.json()["token"]
    unknown = next(word for word in VOICE_WORDS if word != token.lower())

    clock.now = NOW + timedelta(minutes=15, seconds=1)
    expired = await client.post("/api/voice/token/validate", json={"token": token})
    missing = await client.post("/api/voice/token/validate", json={"token": unknown})

    assert expired.status_code == missing.status_code == 200
    assert expired.json() == missing.json() == {"valid": False}


@pytest.mark.asyncio
async def test_unavailable_store_returns_generic_503(client):
    app.dependency_overrides[get_token_service] = lambda: TokenService(UnavailableStore())
    try:
        issued = await client.post("/api/voice/token", headers=ALICE)
        validated = await client.post("/api/voice/token/validate", json={"token": "mela"})
    finally:
        app.dependency_overrides.pop(get_token_service, None)

    assert issued.status_code == 503
    assert issued.json() == {"success": False, "error": "Failed to generate token"}
    assert validated.status_code == 503
    assert "unreachable" not in validated.text


@pytest.mark.asyncio
async def test_unexpected_failure_returns_generic_500(token_service, client, monkeypatch):
    async def explode(user_id: str) -> bool:
        raise RuntimeError("secret internal detail")

    monkeypatch.setattr(token_service, "invalidate_user_token", explode)

    response = await client.delete("/api/voice/token", headers=ALICE)

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Failed to invalidate token"}


@pytest.mark.asyncio
async def test_health_reports_token_store(token_service, client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "voiceTokens": "ready"}


@pytest.mark.asyncio
async def test_robots(client):
    robots = await client.get("/robots.txt")

    assert robots.status_code == 200
    assert "User-agent" in robots.text
