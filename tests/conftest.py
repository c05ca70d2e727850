"""Pytest configuration and fixtures.

Unit tests run without Docker: the database and broker controllers are
replaced by in-memory fakes, while the service orchestrator and stub server
run for real on in-process uvicorn servers.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pubsub_harness.broker.topics import topic_name
from pubsub_harness.context import BrokerEndpoint, ConnectionSettings, DatabaseMode, ServiceContext
from pubsub_harness.controller import HarnessController
from pubsub_harness.core.config import HarnessSettings
from pubsub_harness.core.exceptions import BrokerNotStartedError
from pubsub_harness.environment import BrokerEnvironment
from pubsub_harness.services import ServiceOrchestrator, StubServer

pytest_plugins = ["pytest_asyncio"]


# =============================================================================
# FAKE INFRASTRUCTURE
# =============================================================================


class FakeDatabaseController:
    """In-memory stand-in for DatabaseController."""

    def __init__(self, module_schema: str = "pubsub_config", schema_suffix: str = "mod_pubsub"):
        self.module_schema = module_schema
        self.schema_suffix = schema_suffix
        self.calls: list[tuple[Any, ...]] = []
        self.rows: dict[str, int] = {}
        self.failing_tables: dict[str, Exception] = {}
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.started = False

    def schema_for(self, tenant: str | None = None) -> str:
        return self.module_schema if tenant is None else f"{tenant}_{self.schema_suffix}"

    async def start(self, mode: DatabaseMode) -> ConnectionSettings:
        self.calls.append(("start", mode))
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        return ConnectionSettings("localhost", 5432, "folio_admin", "folio_admin", "okapi_modules")

    async def stop(self) -> None:
        self.calls.append(("stop",))
        if self.stop_error is not None:
            raise self.stop_error
        self.started = False

    async def close_connections(self) -> None:
        self.calls.append(("close_connections",))

    async def clear_table(self, table: str, tenant: str | None = None) -> None:
        key = f"{self.schema_for(tenant)}.{table}"
        self.calls.append(("clear_table", key))
        await asyncio.sleep(0)
        if table in self.failing_tables:
            raise self.failing_tables[table]
        self.rows[key] = 0

    async def count_rows(self, table: str, tenant: str | None = None) -> int:
        return self.rows.get(f"{self.schema_for(tenant)}.{table}", 0)

    def insert(self, table: str, tenant: str | None = None, count: int = 1) -> None:
        key = f"{self.schema_for(tenant)}.{table}"
        self.rows[key] = self.rows.get(key, 0) + count

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)


class FakeBrokerController:
    """In-memory stand-in for BrokerController."""

    def __init__(self, prefix: str = "pub-sub"):
        self.prefix = prefix
        self.topics: list[str] = []
        self.endpoint: BrokerEndpoint | None = None
        self.start_error: Exception | None = None
        self.stopped = False

    def topic_name(self, event_type: str, tenant: str) -> str:
        return topic_name(event_type, tenant, prefix=self.prefix)

    async def start(self) -> BrokerEndpoint:
        if self.start_error is not None:
            raise self.start_error
        self.endpoint = BrokerEndpoint("localhost", 19092)
        return self.endpoint

    async def create_topic(self, name: str) -> bool:
        self.topics.append(name)
        return True

    def get_broker_address(self) -> str:
        if self.endpoint is None:
            raise BrokerNotStartedError()
        return self.endpoint.address

    async def stop(self) -> None:
        self.stopped = True
        self.endpoint = None


# =============================================================================
# SERVICE UNDER TEST
# =============================================================================


class SampleService:
    """Minimal service exposing the tenant endpoint, with call tracking."""

    def __init__(self, tenant_status: int = 201, okapi_callback: str | None = None):
        self.tenant_status = tenant_status
        # Path requested on X-Okapi-Url while handling /_/tenant
        self.okapi_callback = okapi_callback
        self.okapi_responses: list[int] = []
        self.tenant_calls: list[dict[str, Any]] = []
        self.contexts: list[ServiceContext] = []

    def create_app(self, context: ServiceContext) -> FastAPI:
        self.contexts.append(context)
        app = FastAPI()

        @app.post("/_/tenant")
        async def post_tenant(request: Request) -> JSONResponse:
            self.tenant_calls.append(
                {"headers": dict(request.headers), "body": await request.json()}
            )
            if self.okapi_callback is not None:
                async with httpx.AsyncClient(
                    base_url=request.headers["x-okapi-url"], timeout=5.0
                ) as client:
                    try:
                        response = await client.get(self.okapi_callback)
                    except httpx.HTTPError as e:
                        return JSONResponse({"error": str(e)}, status_code=500)
                self.okapi_responses.append(response.status_code)
            return JSONResponse({"id": "job"}, status_code=self.tenant_status)

        @app.get("/admin/health")
        async def health() -> dict[str, str]:
            return {"status": "ok", "kafka": context.broker.address}

        return app


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings() -> HarnessSettings:
    """Default settings, independent of the caller's environment."""
    return HarnessSettings(_env_file=None, log_level="DEBUG")


@pytest.fixture
def fake_database() -> FakeDatabaseController:
    return FakeDatabaseController()


@pytest.fixture
def fake_broker() -> FakeBrokerController:
    return FakeBrokerController()


@pytest.fixture
def sample_service() -> SampleService:
    return SampleService()


@pytest.fixture
def environ() -> dict[str, str]:
    return {}


@pytest.fixture
def controller_factory(settings, fake_database, fake_broker, sample_service, environ):
    """Build a HarnessController wired to fakes and a real in-process service."""

    def _build(**overrides: Any) -> HarnessController:
        components: dict[str, Any] = {
            "database": fake_database,
            "broker": fake_broker,
            "orchestrator": ServiceOrchestrator(
                settings.service, app_factory=sample_service.create_app
            ),
            "stub_server": StubServer(),
            "environment": BrokerEnvironment(environ=environ),
        }
        components.update(overrides)
        return HarnessController(settings, **components)

    return _build


@pytest_asyncio.fixture
async def controller(controller_factory) -> AsyncGenerator[HarnessController, None]:
    """Controller torn down after the test, whatever happened."""
    harness = controller_factory()
    yield harness
    try:
        await harness.global_teardown()
    except Exception:
        pass
