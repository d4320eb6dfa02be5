"""
Shared fixtures: settings, a throwaway SQLite database and in-process
fakes for the identity providers and n8n behind one ``httpx.MockTransport``.
"""

import json
import re
from urllib.parse import parse_qsl

import httpx
import pytest

from config.settings import Settings
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.vault import CredentialVault
from database.session import build_engine, build_session_factory, create_all
from provisioning.n8n_client import N8nClient

TEST_KEY_HEX = "11" * 32
N8N_URL = "http://n8n.test/api/v1"
N8N_KEY = "test-n8n-key"
BACKEND_URL = "http://backend.test"


def make_settings(database_url: str = "sqlite+aiosqlite://", **overrides) -> Settings:
    values = dict(
        oauth_state_secret="test-state-secret",
        token_encryption_key=TEST_KEY_HEX,
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        n8n_api_url=N8N_URL,
        n8n_api_key=N8N_KEY,
        backend_url=BACKEND_URL,
        database_url=database_url,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ── Fakes ──────────────────────────────────────────────────────────────


class FakeIdentityProvider:
    """Google and Microsoft token endpoints."""

    def __init__(self):
        self.valid_codes = {"good-code"}
        self.exchange_calls = 0
        self.refresh_calls = 0
        self.reject_refresh = False
        self.omit_refresh_token = False
        self.requests = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.requests.append(form)
        microsoft = request.url.host == "login.microsoftonline.com"

        if form.get("grant_type") == "authorization_code":
            self.exchange_calls += 1
            if form.get("code") not in self.valid_codes:
                return httpx.Response(400, json={"error": "invalid_grant"})
            body = {
                "access_token": "access-1",
                "expires_in": 3599,
                "token_type": "Bearer",
                "scope": "mail.read",
            }
            if not self.omit_refresh_token:
                body["refresh_token"] = "refresh-1"
            if microsoft:
                body["ext_expires_in"] = 3599
            return httpx.Response(200, json=body)

        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            if self.reject_refresh:
                return httpx.Response(400, json={"error": "invalid_grant"})
            body = {
                "access_token": f"access-refreshed-{self.refresh_calls}",
                "expires_in": 3600,
                "token_type": "Bearer",
            }
            if microsoft:
                body["refresh_token"] = f"refresh-rotated-{self.refresh_calls}"
            return httpx.Response(200, json=body)

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


class FakeN8n:
    """Just enough of the n8n public API."""

    def __init__(self):
        self.credentials = []
        self.workflows = {}
        self.activated = []
        self.transfers = []
        self.projects = []
        self.fail_on = {}  # (method, path regex) -> status code
        self.maintenance_on = set()  # (method, path regex) answered 200 with an HTML page
        self.updates = []
        self.calls = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("X-N8N-API-KEY") != N8N_KEY:
            return httpx.Response(401, json={"message": "unauthorized"})
        path = request.url.path[len("/api/v1"):]
        method = request.method
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else None

        for (fail_method, pattern), code in self.fail_on.items():
            if fail_method == method and re.fullmatch(pattern, path):
                return httpx.Response(code, json={"message": f"rejected {method} {path}"})
        for maint_method, pattern in self.maintenance_on:
            if maint_method == method and re.fullmatch(pattern, path):
                return httpx.Response(200, text="<html>maintenance</html>", headers={"Content-Type": "text/html"})

        if method == "POST" and path == "/credentials":
            cred = {"id": f"cred-{len(self.credentials) + 1}", **body}
            self.credentials.append(cred)
            return httpx.Response(200, json={"id": cred["id"], "name": cred["name"], "type": cred["type"]})

        if method == "POST" and path == "/workflows":
            workflow_id = f"wf-{len(self.workflows) + 1}"
            self.workflows[workflow_id] = body
            return httpx.Response(200, json={"id": workflow_id, "active": False, **body})

        match = re.fullmatch(r"/workflows/([^/]+)", path)
        if method == "PUT" and match and match.group(1) in self.workflows:
            self.workflows[match.group(1)] = body
            self.updates.append(match.group(1))
            return httpx.Response(200, json={"id": match.group(1), **body})

        match = re.fullmatch(r"/workflows/([^/]+)/activate", path)
        if method == "POST" and match:
            self.activated.append(match.group(1))
            return httpx.Response(200, json={"id": match.group(1), "active": True})

        match = re.fullmatch(r"/workflows/([^/]+)/transfer", path)
        if method == "PUT" and match:
            self.transfers.append((match.group(1), body["destinationProjectId"]))
            return httpx.Response(204)

        if method == "GET" and path == "/projects":
            return httpx.Response(200, json={"data": self.projects, "nextCursor": None})

        if method == "POST" and path == "/projects":
            project = {"id": f"proj-{len(self.projects) + 1}", "name": body["name"], "type": "team"}
            self.projects.append(project)
            return httpx.Response(201, json=project)

        return httpx.Response(404, json={"message": "not found"})

    @property
    def created_workflow_ids(self):
        return list(self.workflows)


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def n8n_fake():
    return FakeN8n()


@pytest.fixture
def transport(idp, n8n_fake):
    def route(request: httpx.Request) -> httpx.Response:
        if request.url.host == "n8n.test":
            return n8n_fake.handle(request)
        if request.url.host in ("oauth2.googleapis.com", "login.microsoftonline.com"):
            return idp.handle(request)
        return httpx.Response(404)

    return httpx.MockTransport(route)


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def cipher(settings):
    return TokenCipher.from_settings(settings)


@pytest.fixture
def vault(session_factory, cipher):
    return CredentialVault(session_factory, cipher)


@pytest.fixture
def registry(settings, transport):
    return ConnectorRegistry.from_settings(settings, transport=transport)


@pytest.fixture
def n8n_client(transport):
    return N8nClient(N8N_URL, N8N_KEY, transport=transport)
