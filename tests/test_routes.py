"""
HTTP-level tests through the ASGI app.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import ASGITransport, AsyncClient

from database.session import create_all
from main import create_app
from utils.schemas import TokenBundle

INTERNAL_KEY = "internal-test-key"


@pytest.fixture
def app(settings_factory, tmp_path, transport):
    settings = settings_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'routes.db'}",
        internal_api_key=INTERNAL_KEY,
    )
    return create_app(settings, transport=transport)


@pytest.fixture
async def client(app):
    # ASGITransport doesn't run lifespan events
    await create_all(app.state.engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.engine.dispose()


async def _connect(client, provider="gmail", tenant_id="t1"):
    resp = await client.get(f"/auth/{provider}/connect", params={"tenantId": tenant_id})
    assert resp.status_code == 302
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


class TestOAuthRoutes:
    @pytest.mark.asyncio
    async def test_providers(self, client):
        resp = await client.get("/auth/providers")
        assert resp.status_code == 200
        assert [p["provider"] for p in resp.json()] == ["gmail", "outlook"]

    @pytest.mark.asyncio
    async def test_connect_redirects_to_consent(self, client):
        resp = await client.get("/auth/gmail/connect", params={"tenantId": "t1"})
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        assert resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_connect_requires_tenant(self, client):
        resp = await client.get("/auth/gmail/connect")
        assert resp.status_code == 400
        assert resp.json()["error"] == "MISSING_TENANT_ID"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id", ['t1", x: $env.INTERNAL_API_KEY, y: "', "{{BACKEND_URL}}", "t" * 65])
    async def test_connect_rejects_malformed_tenant(self, client, tenant_id):
        resp = await client.get("/auth/gmail/connect", params={"tenantId": tenant_id})
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_TENANT_ID"

    @pytest.mark.asyncio
    async def test_connect_unknown_provider(self, client):
        resp = await client.get("/auth/yahoo/connect", params={"tenantId": "t1"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "UNKNOWN_PROVIDER"

    @pytest.mark.asyncio
    async def test_callback_redirects_to_onboarding_page(self, client, n8n_fake):
        state = await _connect(client)

        resp = await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})

        assert resp.status_code == 302
        assert resp.headers["location"] == "http://backend.test/onboarding.html?tenantId=t1&gmail_success=true"
        assert list(n8n_fake.workflows) == ["wf-1"]

    @pytest.mark.asyncio
    async def test_callback_redirects_even_when_engine_is_down(self, client, n8n_fake):
        n8n_fake.fail_on[("POST", "/credentials")] = 503
        n8n_fake.fail_on[("POST", "/workflows")] = 503
        state = await _connect(client, provider="outlook")

        resp = await client.get("/auth/outlook/callback", params={"code": "good-code", "state": state})

        assert resp.status_code == 302
        assert "outlook_success=true" in resp.headers["location"]

    @pytest.mark.asyncio
    async def test_invalid_state_is_generic_400(self, client):
        resp = await client.get("/auth/gmail/callback", params={"code": "good-code", "state": "bogus"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "INVALID_STATE", "detail": "Invalid OAuth state"}

    @pytest.mark.asyncio
    async def test_rejected_code_is_400_without_provider_detail(self, client):
        state = await _connect(client)
        resp = await client.get("/auth/gmail/callback", params={"code": "bad-code", "state": state})
        assert resp.status_code == 400
        assert resp.json()["error"] == "CODE_EXCHANGE_FAILED"
        assert "invalid_grant" not in resp.text

    @pytest.mark.asyncio
    async def test_consent_denied(self, client):
        resp = await client.get("/auth/gmail/callback", params={"error": "access_denied"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "CODE_EXCHANGE_FAILED"


class TestTokenRoutes:
    @pytest.mark.asyncio
    async def test_requires_internal_key(self, client):
        resp = await client.get("/api/token/gmail/t1")
        assert resp.status_code == 401
        resp = await client.get("/api/token/gmail/t1", headers={"X-Internal-Key": "wrong"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_returns_valid_token(self, client):
        state = await _connect(client)
        await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})

        resp = await client.get("/api/token/gmail/t1", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["access_token"] == "access-1"
        assert body["tenant_id"] == "t1"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_refreshes_expired_token(self, client, app, idp):
        await app.state.vault.set_tokens(
            "t1",
            "gmail",
            TokenBundle(
                access_token="stale",
                refresh_token="refresh-1",
                expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            ),
        )

        resp = await client.get("/api/token/gmail/t1", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.json()["access_token"] == "access-refreshed-1"
        assert idp.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_force_refresh(self, client, idp):
        state = await _connect(client)
        await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})

        resp = await client.post("/api/token/gmail/t1/refresh", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.status_code == 200
        assert resp.json()["access_token"] == "access-refreshed-1"

    @pytest.mark.asyncio
    async def test_revoked_access_is_409(self, client, idp):
        state = await _connect(client)
        await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})
        idp.reject_refresh = True

        resp = await client.post("/api/token/gmail/t1/refresh", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.status_code == 409
        assert resp.json()["error"] == "REFRESH_FAILED"

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_404(self, client):
        resp = await client.get("/api/token/gmail/nobody", headers={"X-Internal-Key": INTERNAL_KEY})
        assert resp.status_code == 404
        assert resp.json()["error"] == "NO_TOKENS"


class TestProvisioningRoutes:
    @pytest.mark.asyncio
    async def test_status_never_exposes_tokens(self, client):
        state = await _connect(client)
        await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})

        resp = await client.get("/api/provisioning/t1", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.status_code == 200
        body = resp.json()
        assert body["email_provider"] == "gmail"
        assert body["has_tokens"] is True
        assert body["workflow_id"] == "wf-1"
        assert body["status"] == "COMPLETE"
        assert "access-1" not in resp.text
        assert "ciphertext" not in resp.text

    @pytest.mark.asyncio
    async def test_status_unknown_tenant(self, client):
        resp = await client.get("/api/provisioning/nobody", headers={"X-Internal-Key": INTERNAL_KEY})
        assert resp.status_code == 404
        assert resp.json()["error"] == "TENANT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_retry(self, client, n8n_fake):
        n8n_fake.fail_on[("POST", "/workflows")] = 503
        state = await _connect(client)
        await client.get("/auth/gmail/callback", params={"code": "good-code", "state": state})
        n8n_fake.fail_on.clear()

        resp = await client.post("/api/provisioning/t1/retry", headers={"X-Internal-Key": INTERNAL_KEY})

        assert resp.status_code == 200
        assert resp.json()["workflow_id"] == "wf-1"
        assert resp.json()["failures"] == []

    @pytest.mark.asyncio
    async def test_retry_without_tokens(self, client):
        resp = await client.post("/api/provisioning/nobody/retry", headers={"X-Internal-Key": INTERNAL_KEY})
        assert resp.status_code == 404
