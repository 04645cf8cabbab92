import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from main import app
from routers import health, rate_limit
from routers.deps import get_converter_service
from services.session_token import ROLE_ADMIN, create_service_token, decode_service_token


def _headers(role="frontend"):
    token = create_service_token("chat-frontend", role=role)["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_client(make_service, fakes):
    service = make_service(INITIAL_CREDITS=2, REFERRAL_BONUS=3)
    app.dependency_overrides[get_converter_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, service

    app.dependency_overrides.pop(get_converter_service, None)


@pytest.mark.asyncio
async def test_routes_require_service_token(api_client):
    client, _ = api_client

    missing = await client.get("/accounts/1/balance")
    forged = await client.get("/accounts/1/balance", headers={"Authorization": "Bearer not-a-token"})

    assert missing.status_code == 401
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_start_with_referral_payload_and_balance(api_client):
    client, _ = api_client
    headers = _headers()

    referrer = await client.post("/accounts/100/start", json={}, headers=headers)
    assert referrer.status_code == 200
    assert referrer.json()["created"] is True

    invite = await client.get("/accounts/100/referral", headers=headers)
    assert invite.json()["start_payload"] == "ref_100"

    invited = await client.post("/accounts/200/start", json={"start_payload": "ref_100"}, headers=headers)
    assert invited.json()["referral_awarded"] is True

    balance = await client.get("/accounts/100/balance", headers=headers)
    assert balance.json() == {"account_id": "100", "balance": 5}

    ledger = await client.get("/accounts/100/ledger", headers=headers)
    entry_types = [entry["entry_type"] for entry in ledger.json()["recent_entries"]]
    assert sorted(entry_types) == ["referral_bonus", "signup_grant"]


@pytest.mark.asyncio
async def test_upload_select_and_exhaust_credits(api_client, fakes):
    client, _ = api_client
    headers = _headers()

    formats = await client.get("/conversions/formats", params={"media_kind": "audio"}, headers=headers)
    assert [item["value"] for item in formats.json()["formats"]] == ["mp3", "wav", "ogg"]

    for expected_balance in (1, 0):
        ticket = await client.post(
            "/conversions/300/session",
            json={"source_ref": "files/voice.ogg", "byte_size": 4096, "mime_type": "audio/ogg"},
            headers=headers,
        )
        assert ticket.status_code == 200
        assert ticket.json()["media_kind"] == "audio"

        result = await client.post("/conversions/300/session/select", json={"format": "mp3"}, headers=headers)
        body = result.json()
        assert body["status"] == "delivered"
        assert body["balance_after"] == expected_balance
        assert body["staged_ref"] in fakes.store.objects

    rejected = await client.post(
        "/conversions/300/session",
        json={"source_ref": "files/voice.ogg", "byte_size": 4096, "media_kind": "audio"},
        headers=headers,
    )
    assert rejected.status_code == 402
    assert rejected.json()["detail"]["code"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_select_without_session_and_cancel(api_client):
    client, _ = api_client
    headers = _headers()

    stale = await client.post("/conversions/400/session/select", json={"format": "720p"}, headers=headers)
    assert stale.json()["code"] == "session_not_found"

    await client.post(
        "/conversions/400/session",
        json={"source_ref": "files/clip", "byte_size": 10, "media_kind": "video"},
        headers=headers,
    )
    cancelled = await client.delete("/conversions/400/session", headers=headers)
    assert cancelled.json() == {"account_id": "400", "cancelled": True}

    unsupported = await client.post(
        "/conversions/400/session",
        json={"source_ref": "files/doc", "byte_size": 10, "mime_type": "application/pdf"},
        headers=headers,
    )
    assert unsupported.status_code == 415


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(api_client):
    client, _ = api_client

    response = await client.get("/admin/stats", headers=_headers())

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_adjust_reset_stats_and_sweep(api_client):
    client, _ = api_client
    headers = _headers()
    admin = _headers(ROLE_ADMIN)
    await client.post("/accounts/500/start", json={}, headers=headers)

    topped_up = await client.post("/admin/accounts/500/credits", json={"delta": 8}, headers=admin)
    assert topped_up.json()["balance_after"] == 10

    overdraw = await client.post("/admin/accounts/500/credits", json={"delta": -11}, headers=admin)
    assert overdraw.status_code == 422

    missing = await client.post("/admin/accounts/nobody/credits", json={"delta": 1}, headers=admin)
    assert missing.status_code == 404

    reset = await client.post("/admin/accounts/500/reset", headers=admin)
    assert reset.json()["credits"] == 2

    stats = await client.get("/admin/stats", headers=admin)
    assert stats.json() == {"total_accounts": 1, "active_accounts_7d": 1, "total_conversions": 0}

    sweep = await client.post("/admin/sweep", headers=admin)
    assert sweep.json() == {"reclaimed": 0}


@pytest.mark.asyncio
async def test_session_begin_is_rate_limited_per_account(api_client, monkeypatch):
    client, _ = api_client
    headers = _headers()
    app.state.disable_rate_limits = False
    monkeypatch.setattr(rate_limit.settings, "REDIS_URL", "redis://127.0.0.1:1")
    rate_limit._fallback_windows["mcv:rate:session_begin:account:600"] = (60, 10**12)

    limited = await client.post(
        "/conversions/600/session",
        json={"source_ref": "files/clip", "byte_size": 10, "media_kind": "video"},
        headers=headers,
    )
    other = await client.post(
        "/conversions/601/session",
        json={"source_ref": "files/clip", "byte_size": 10, "media_kind": "video"},
        headers=headers,
    )

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_readiness_reports_missing_collaborators(api_client, monkeypatch):
    client, _ = api_client
    monkeypatch.setattr(health.settings, "MEDIA_SOURCE_BASE_URL", "")
    monkeypatch.setattr(health.settings, "STORAGE_BACKEND", "http")
    monkeypatch.setattr(health.settings, "STORAGE_BASE_URL", "")

    live = await client.get("/health/live")
    ready = await client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert ready.status_code == 503
    assert {"MEDIA_SOURCE_BASE_URL", "STORAGE_BASE_URL"} <= set(ready.json()["missing"])


def test_service_token_round_trip_and_rejections():
    issued = create_service_token("ops-console", role=ROLE_ADMIN, expires_hours=2)

    identity = decode_service_token(issued["token"])
    assert identity.client_id == "ops-console"
    assert identity.is_admin
    assert int(identity.expires_at.timestamp()) == issued["expires_at"]

    with pytest.raises(ValueError):
        create_service_token("ops-console", role="superuser")
    with pytest.raises(ValueError):
        decode_service_token(issued["token"] + "tampered")
