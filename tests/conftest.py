"""Pytest configuration and shared fixtures for the Entra MCP proxy tests."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from oauth.clients import ClientRegistry
from oauth.correlation import AuthorizationCorrelator, CodeCorrelator
from oauth.flow import FlowOrchestrator
from oauth.models import TenantConfig
from oauth.stores import TtlStore
from oauth.tenants import SingleTenantResolver

PROXY_BASE_URL = "https://proxy.example.com"
CALLBACK_URL = f"{PROXY_BASE_URL}/callback"
TENANT_ID = "11111111-2222-3333-4444-555555555555"
RESOURCE = "https://api.example.com"
CLIENT_REDIRECT_URI = "https://client.example/cb"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenEndpoint:
    """Records token requests and answers with a canned response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = {
            "access_token": "entra-access-token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "id_token": "entra-id-token",
        }
        self.error: Exception = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(self.status_code, text=self.body)

    @property
    def last_form(self) -> dict:
        body = self.requests[-1].content.decode()
        return {key: values[0] for key, values in parse_qs(body).items()}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tenant() -> TenantConfig:
    return TenantConfig.from_authority(
        tenant_id=TENANT_ID,
        client_id="proxy-app-id",
        client_secret="proxy-app-secret",
    )


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def client_store() -> TtlStore:
    return TtlStore()


@pytest.fixture
def authorization_store(clock) -> TtlStore:
    return TtlStore(ttl_seconds=600, clock=clock)


@pytest.fixture
def code_store(clock) -> TtlStore:
    return TtlStore(ttl_seconds=600, clock=clock)


@pytest.fixture
def registry(client_store) -> ClientRegistry:
    return ClientRegistry(client_store)


@pytest.fixture
def orchestrator(registry, authorization_store, code_store, tenant, token_endpoint) -> FlowOrchestrator:
    return FlowOrchestrator(
        clients=registry,
        authorizations=AuthorizationCorrelator(authorization_store),
        codes=CodeCorrelator(code_store),
        tenants=SingleTenantResolver(tenant),
        callback_url=CALLBACK_URL,
        transport=token_endpoint.transport,
    )


@pytest.fixture
def registered_client(registry):
    return registry.register([CLIENT_REDIRECT_URI], client_name="Test MCP Client")


@pytest.fixture
def proxy_env() -> dict:
    """Environment for a single-tenant, in-memory proxy."""
    return {
        "PROXY_BASE_URL": PROXY_BASE_URL,
        "ENTRA_TENANT_ID": TENANT_ID,
        "ENTRA_CLIENT_ID": "proxy-app-id",
        "ENTRA_CLIENT_SECRET": "proxy-app-secret",
    }


@pytest.fixture
def tenants_file(tmp_path):
    path = tmp_path / "tenants.json"
    path.write_text(json.dumps({
        "https://api.example.com": {
            "tenant_id": "tenant-a",
            "client_id": "app-a",
            "client_secret": "secret-a",
        },
        "https://other.example.com": {
            "tenant_id": "tenant-b",
            "client_id": "app-b",
            "client_secret": "secret-b",
            "authority": "https://login.microsoftonline.us/tenant-b",
        },
    }))
    return path
