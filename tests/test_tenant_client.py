"""Tests for the tenant registration client."""

from __future__ import annotations

import json

import httpx
import pytest

from pubsub_harness.context import TenantIdentity
from pubsub_harness.core.exceptions import TenantRegistrationError
from pubsub_harness.services.tenant import TenantAttributes, TenantClient


IDENTITY = TenantIdentity("diku", "token")


def _client(handler) -> TenantClient:
    return TenantClient(
        "http://service.test",
        IDENTITY,
        okapi_url="http://stubs.test",
        transport=httpx.MockTransport(handler),
    )


class TestTenantAttributes:
    """Registration request body."""

    def test_minimal_body(self):
        """Only module_to when nothing else is set."""
        assert TenantAttributes(module_to="mod-pubsub-1.0.0").to_dict() == {
            "module_to": "mod-pubsub-1.0.0"
        }

    def test_parameters_as_key_value_list(self):
        """Parameters are sent as key/value pairs."""
        body = TenantAttributes(
            module_to="mod-pubsub-1.0.0",
            module_from="mod-pubsub-0.9.0",
            parameters={"loadReference": "false", "loadSample": "true"},
        ).to_dict()

        assert body["module_from"] == "mod-pubsub-0.9.0"
        assert body["parameters"] == [
            {"key": "loadReference", "value": "false"},
            {"key": "loadSample", "value": "true"},
        ]


class TestTenantClient:
    """POST /_/tenant with tenant headers."""

    @pytest.mark.asyncio
    async def test_posts_with_tenant_headers(self):
        """Request carries tenant, token and Okapi URL headers."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "job-1"})

        response = await _client(handler).post_tenant(TenantAttributes(module_to="mod-pubsub-1.0.0"))

        assert response.status_code == 201
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/_/tenant"
        assert request.headers["X-Okapi-Tenant"] == "diku"
        assert request.headers["X-Okapi-Token"] == "token"
        assert request.headers["X-Okapi-Url"] == "http://stubs.test"
        assert json.loads(request.content) == {"module_to": "mod-pubsub-1.0.0"}

    @pytest.mark.asyncio
    async def test_okapi_url_defaults_to_service(self):
        """Without an Okapi URL the service's own URL is sent."""
        client = TenantClient("http://service.test", IDENTITY)
        assert client.headers()["X-Okapi-Url"] == "http://service.test"

    @pytest.mark.asyncio
    async def test_non_success_status_fails(self):
        """Any non-2xx answer fails registration."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="Invalid schema")

        with pytest.raises(TenantRegistrationError) as exc_info:
            await _client(handler).post_tenant(TenantAttributes(module_to="mod-pubsub-1.0.0"))

        assert exc_info.value.details == {"tenant": "diku", "status": 400}
        assert "Invalid schema" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_fails(self):
        """Connection errors fail registration."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TenantRegistrationError, match="request failed"):
            await _client(handler).post_tenant(TenantAttributes(module_to="mod-pubsub-1.0.0"))
