"""Tenant registration client.

The service under test exposes ``POST /_/tenant``; the harness calls it once
per suite so the tenant's schema exists before the first test request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from pubsub_harness.context import TenantIdentity
from pubsub_harness.core.exceptions import TenantRegistrationError
from pubsub_harness.core.logging import get_logger


logger = get_logger("tenant")

TENANT_PATH = "/_/tenant"

OKAPI_HEADER_TENANT = "X-Okapi-Tenant"
OKAPI_HEADER_TOKEN = "X-Okapi-Token"
OKAPI_HEADER_URL = "X-Okapi-Url"


@dataclass
class TenantAttributes:
    """Body of the tenant registration request."""

    module_to: str
    module_from: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"module_to": self.module_to}
        if self.module_from:
            body["module_from"] = self.module_from
        if self.parameters:
            body["parameters"] = [
                {"key": key, "value": value} for key, value in self.parameters.items()
            ]
        return body


class TenantClient:
    """Posts tenant attributes to a service on behalf of one tenant."""

    def __init__(
        self,
        base_url: str,
        identity: TenantIdentity,
        *,
        okapi_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.identity = identity
        self.okapi_url = okapi_url or base_url
        self.timeout = timeout
        self._transport = transport

    def headers(self) -> dict[str, str]:
        return {
            OKAPI_HEADER_TENANT: self.identity.tenant_id,
            OKAPI_HEADER_TOKEN: self.identity.token,
            OKAPI_HEADER_URL: self.okapi_url,
            "Accept": "application/json, text/plain",
        }

    async def post_tenant(self, attributes: TenantAttributes) -> httpx.Response:
        """Register the tenant. Any non-2xx answer is a failure."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    TENANT_PATH,
                    json=attributes.to_dict(),
                    headers=self.headers(),
                )
            except httpx.HTTPError as e:
                raise TenantRegistrationError(
                    f"Tenant {self.identity.tenant_id} registration request failed: {e}",
                    details={"tenant": self.identity.tenant_id},
                ) from e

        if not response.is_success:
            raise TenantRegistrationError(
                f"Tenant {self.identity.tenant_id} registration returned "
                f"{response.status_code}: {response.text[:500]}",
                details={
                    "tenant": self.identity.tenant_id,
                    "status": response.status_code,
                },
            )

        logger.info(
            f"Tenant {self.identity.tenant_id} registered for {attributes.module_to} "
            f"({response.status_code})"
        )
        return response
