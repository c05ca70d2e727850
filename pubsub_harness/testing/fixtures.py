"""
pytest fixtures driving the harness lifecycle.

Enable them from the rootdir conftest:

    pytest_plugins = ["pubsub_harness.testing.fixtures"]

or, from a conftest further down, by importing the fixtures by name. The
module defines fixtures only, so an import brings in everything.

The ``harness`` fixture is session-scoped and async, so tests using it
must share the session event loop:

    pytestmark = pytest.mark.asyncio(loop_scope="session")

    async def test_publish(api_client, stub_server):
        stub_server.stub_for(Stub(method="GET", path="/users", json={}))
        response = await api_client.post("/pubsub/publish", json={...})
        assert response.status_code == 204
"""

from __future__ import annotations

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from pubsub_harness.controller import HarnessController
from pubsub_harness.core.config import HarnessSettings
from pubsub_harness.core.exceptions import (
    HarnessSetupError,
    HarnessTeardownError,
    TestSetupError,
)
from pubsub_harness.core.logging import get_logger, setup_logging
from pubsub_harness.database import DatabaseController
from pubsub_harness.request_spec import RequestSpec
from pubsub_harness.services import StubServer


logger = get_logger("fixtures")


# =============================================================================
# SESSION
# =============================================================================


@pytest.fixture(scope="session")
def harness_settings() -> HarnessSettings:
    """Harness settings from the environment, with logging configured."""
    settings = HarnessSettings()
    setup_logging(settings)
    return settings


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def harness(
    harness_settings: HarnessSettings,
) -> AsyncGenerator[HarnessController, None]:
    """
    Global setup once per session, global teardown at the end.

    A setup failure errors every test that depends on the harness; pytest
    caches the failure, so setup is not attempted again.
    """
    controller = HarnessController(harness_settings)
    try:
        await controller.global_setup(timeout=harness_settings.setup_timeout)
    except HarnessSetupError:
        try:
            await controller.global_teardown()
        except HarnessTeardownError as e:
            # Setup error is the one to report
            logger.warning(f"Cleanup after failed setup was incomplete: {e}")
        raise

    yield controller

    await controller.global_teardown()


# =============================================================================
# PER TEST
# =============================================================================


@pytest_asyncio.fixture(loop_scope="session")
async def harness_spec(
    harness: HarnessController,
    request: pytest.FixtureRequest,
) -> AsyncGenerator[RequestSpec, None]:
    """Clean tables and a running stub server for the duration of one test."""
    try:
        spec = await harness.per_test_setup(request.node.nodeid)
    except TestSetupError:
        await harness.per_test_teardown()
        raise

    try:
        yield spec
    finally:
        await harness.per_test_teardown()


@pytest_asyncio.fixture(loop_scope="session")
async def api_client(harness_spec: RequestSpec) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client carrying the tenant, token and stub URL headers."""
    async with harness_spec.client() as client:
        yield client


@pytest.fixture
def stub_server(harness: HarnessController, harness_spec: RequestSpec) -> StubServer:
    """The per-test stub server (started, with no stubs)."""
    return harness.stub_server


@pytest.fixture
def harness_database(harness: HarnessController) -> DatabaseController:
    """Database controller, for row counts and ad-hoc queries."""
    return harness.database
