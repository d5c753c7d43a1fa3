"""Tests for ExternalPricebookProvider against an httpx.MockTransport."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest
from tenacity import wait_none

from src.app.pricebook.errors import ConfigurationError, RateLimited, TransientNetworkError, ValidationError
from src.app.pricebook.providers.external import ExternalPricebookProvider
from src.app.pricebook.rate_limit import RateLimitGuard
from src.app.pricebook.schemas import EntityType

BASE = "https://api.pricing.test"
AUTH = "https://auth.pricing.test"


class Remote:
    """Scripted pricing API: records requests, answers from a queue."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.responses: list[httpx.Response] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/connect/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 900})
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={"data": [], "hasMore": False})


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(ExternalPricebookProvider._send.retry, "wait", wait_none())


@pytest.fixture
def remote():
    return Remote()


@pytest.fixture
def guard():
    return RateLimitGuard()


def _provider(remote: Remote, guard: RateLimitGuard, **overrides) -> ExternalPricebookProvider:
    kwargs = dict(
        base_url=BASE,
        auth_url=AUTH,
        client_id="client",
        client_secret="secret",
        app_key="app-key",
        tenant_id="12345",
        guard=guard,
        client=httpx.AsyncClient(transport=httpx.MockTransport(remote.handler)),
    )
    kwargs.update(overrides)
    return ExternalPricebookProvider(**kwargs)


class TestAuthentication:
    async def test_token_fetched_once_and_sent(self, remote, guard):
        provider = _provider(remote, guard)

        await provider.list_page(EntityType.SERVICE, 1, 50)
        await provider.list_page(EntityType.SERVICE, 2, 50)

        assert remote.token_requests == 1
        assert remote.requests[0].headers["Authorization"] == "Bearer tok-1"
        assert remote.requests[0].headers["ST-App-Key"] == "app-key"

    async def test_missing_credentials(self, remote, guard):
        provider = _provider(remote, guard, client_secret="")

        with pytest.raises(ConfigurationError):
            await provider.list_page(EntityType.SERVICE, 1, 50)
        assert remote.requests == []

    async def test_missing_tenant(self, remote, guard):
        provider = _provider(remote, guard, tenant_id="")

        with pytest.raises(ConfigurationError):
            await provider.get(EntityType.SERVICE, "1")

    async def test_rejected_credentials_drop_token(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(401))

        with pytest.raises(ConfigurationError):
            await provider.list_page(EntityType.SERVICE, 1, 50)
        await provider.list_page(EntityType.SERVICE, 1, 50)

        assert remote.token_requests == 2


class TestRequests:
    async def test_list_params(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(200, json={"data": [{"id": 1}], "hasMore": True}))
        since = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

        body = await provider.list_page(EntityType.MATERIAL, 3, 25, modified_since=since)

        assert body["hasMore"] is True
        request = remote.requests[0]
        assert request.url.path == "/pricebook/v2/tenant/12345/materials"
        assert request.url.params["page"] == "3"
        assert request.url.params["pageSize"] == "25"
        assert request.url.params["modifiedOnOrAfter"] == "2026-03-01T08:30:00+00:00"

    async def test_get_missing_returns_none(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(404))

        assert await provider.get(EntityType.SERVICE, "77") is None

    async def test_get_returns_payload(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(200, json={"id": 77, "displayName": "Tune-up"}))

        body = await provider.get(EntityType.SERVICE, "77")

        assert body["displayName"] == "Tune-up"
        assert remote.requests[0].url.path.endswith("/services/77")

    async def test_create_returns_new_id(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(200, json={"id": 9001}))

        new_id = await provider.create(EntityType.EQUIPMENT, {"name": "Pump"})

        assert new_id == "9001"
        assert remote.requests[0].method == "POST"

    async def test_create_without_id_rejected(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(200, json={}))

        with pytest.raises(ValidationError):
            await provider.create(EntityType.SERVICE, {"displayName": "X"})

    async def test_update_uses_patch(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(200))

        await provider.update(EntityType.CATEGORY, "5", {"name": "Drains"})

        assert remote.requests[0].method == "PATCH"
        assert remote.requests[0].url.path.endswith("/categories/5")

    async def test_other_client_errors_are_validation_errors(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(400, text="bad price"))

        with pytest.raises(ValidationError):
            await provider.update(EntityType.SERVICE, "5", {"price": -1})
        assert len(remote.requests) == 1


class TestFailures:
    """Rate limits and transient errors."""

    async def test_429_arms_guard(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.append(httpx.Response(429, headers={"Retry-After": "120"}))

        with pytest.raises(RateLimited) as exc_info:
            await provider.list_page(EntityType.SERVICE, 1, 50)

        assert exc_info.value.remaining_seconds > 100
        assert guard.is_limited()

    async def test_guard_blocks_before_request(self, remote, guard):
        provider = _provider(remote, guard)
        guard.record_rate_limit(30)

        with pytest.raises(RateLimited):
            await provider.get(EntityType.SERVICE, "1")
        assert remote.requests == []

    async def test_server_error_retried_then_raised(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.extend([httpx.Response(503)] * 3)

        with pytest.raises(TransientNetworkError):
            await provider.list_page(EntityType.SERVICE, 1, 50)
        assert len(remote.requests) == 3

    async def test_server_error_recovers_on_retry(self, remote, guard):
        provider = _provider(remote, guard)
        remote.responses.extend([httpx.Response(502), httpx.Response(200, json={"id": 1})])

        body = await provider.get(EntityType.SERVICE, "1")

        assert body == {"id": 1}
        assert len(remote.requests) == 2

    async def test_transport_error_is_transient(self, guard):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/connect/token":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 900})
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(
            Remote(), guard, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )

        with pytest.raises(TransientNetworkError):
            await provider.get(EntityType.SERVICE, "1")
