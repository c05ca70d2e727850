"""
Harness controller: sequences the whole test environment.

Lifecycle, as driven by the test framework:

    controller = HarnessController(settings)
    await controller.global_setup()          # once, before any test
    spec = await controller.per_test_setup() # before each test
    ...                                      # test body
    await controller.per_test_teardown()     # after each test
    await controller.global_teardown()       # once, after all tests

Failure scope:
- global setup failures are fatal: ``HarnessSetupError``, remembered and
  re-raised to every later caller so no test runs,
- per-test setup failures raise ``TestSetupError`` and fail one test,
- global teardown attempts every step, then raises ``HarnessTeardownError``
  if any failed.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from pubsub_harness.broker import BrokerController
from pubsub_harness.context import (
    DatabaseMode,
    HarnessContext,
    ServiceContext,
    ServiceEndpoint,
    TenantIdentity,
)
from pubsub_harness.core.config import HarnessSettings, get_settings
from pubsub_harness.core.exceptions import (
    HarnessError,
    HarnessSetupError,
    HarnessTeardownError,
    TestSetupError,
)
from pubsub_harness.core.logging import get_logger, phase_var, test_id_var
from pubsub_harness.database import DatabaseController
from pubsub_harness.environment import BrokerEnvironment
from pubsub_harness.network import next_free_port
from pubsub_harness.request_spec import RequestSpec
from pubsub_harness.services import ServiceOrchestrator, StubServer


logger = get_logger("controller")


class HarnessController:
    """Owns every infrastructure handle for one suite run."""

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        *,
        database: DatabaseController | None = None,
        broker: BrokerController | None = None,
        orchestrator: ServiceOrchestrator | None = None,
        stub_server: StubServer | None = None,
        environment: BrokerEnvironment | None = None,
    ):
        self.settings = settings or get_settings()
        self.database = database or DatabaseController(
            self.settings.database,
            schema_suffix=self.settings.service.schema_suffix,
        )
        self.broker = broker or BrokerController(self.settings.broker)
        self.orchestrator = orchestrator or ServiceOrchestrator(self.settings.service)
        self.stub_server = stub_server or StubServer(
            self.settings.stub.host,
            log_requests=self.settings.stub.log_requests,
        )
        self.environment = environment or BrokerEnvironment(
            self.settings.broker.host_env_var,
            self.settings.broker.port_env_var,
        )

        self.mode: DatabaseMode | None = None
        self.context: HarnessContext | None = None
        self._current_step: str | None = None
        self._setup_lock = asyncio.Lock()
        self._setup_error: HarnessSetupError | None = None
        self._torn_down = False

    @property
    def identity(self) -> TenantIdentity:
        return TenantIdentity(self.settings.tenant.tenant_id, self.settings.tenant.token)

    # =========================================================================
    # Global setup
    # =========================================================================

    async def global_setup(self, timeout: float | None = None) -> HarnessContext:
        """Bring the environment up once. Later calls return the same context."""
        phase_var.set("setup")
        async with self._setup_lock:
            if self._setup_error is not None:
                raise self._setup_error
            if self.context is not None:
                return self.context

            try:
                self.context = await asyncio.wait_for(self._run_setup(), timeout)
            except asyncio.TimeoutError as e:
                step = self._current_step or "startup"
                self._setup_error = HarnessSetupError(
                    step, TimeoutError(f"global setup did not finish within {timeout}s")
                )
                self._setup_error.__cause__ = e
            except HarnessSetupError as e:
                self._setup_error = e

            if self._setup_error is not None:
                logger.error(f"Aborting suite: {self._setup_error}")
                raise self._setup_error

            logger.info(
                f"Harness ready: service {self.context.service.url}, "
                f"stub {self.context.stub.url}, broker {self.context.broker.address}"
            )
            return self.context

    async def _step(self, name: str, operation: Callable[..., Any], *args: Any) -> Any:
        self._current_step = name
        logger.info(f"Setup: {name}")
        try:
            result = operation(*args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise HarnessSetupError(name, e) from e
        return result

    async def _run_setup(self) -> HarnessContext:
        tenant = self.identity

        self.mode = await self._step(
            "resolve database mode", DatabaseMode.resolve, self.settings.database.mode
        )
        connection = await self._step("start database", self.database.start, self.mode)
        broker = await self._step("start broker", self.broker.start)
        topics = await self._step("create topics", self._create_topics, tenant.tenant_id)
        await self._step("publish broker endpoint", self.environment.publish, broker)

        service_port, stub_port = self._allocate_ports()
        service = ServiceEndpoint(self.settings.service.host, service_port)
        stub = ServiceEndpoint(self.settings.stub.host, stub_port)

        service_context = ServiceContext(
            host=service.host,
            http_port=service.port,
            broker=broker,
            database=connection,
            stub_url=stub.url,
            module_id=self.settings.service.module_id,
            config=self.settings.service.config,
        )
        await self._step("deploy service", self.orchestrator.deploy, service_context)
        # Registration runs before the stub server exists; the service is its own Okapi
        await self._step("register tenant", self._register_tenant, tenant, service.url)
        self._current_step = None

        return HarnessContext(
            mode=self.mode,
            service=service,
            stub=stub,
            broker=broker,
            tenant=tenant,
            module_id=self.settings.service.module_id,
            topics=tuple(topics),
        )

    async def _create_topics(self, tenant_id: str) -> list[str]:
        topics = [
            self.broker.topic_name(event_type, tenant_id)
            for event_type in self.settings.broker.event_types
        ]
        for topic in topics:
            await self.broker.create_topic(topic)
        return topics

    def _allocate_ports(self) -> tuple[int, int]:
        service_port = next_free_port(self.settings.service.host)
        stub_port = next_free_port(self.settings.stub.host)
        while stub_port == service_port:
            stub_port = next_free_port(self.settings.stub.host)
        return service_port, stub_port

    async def _register_tenant(self, tenant: TenantIdentity, okapi_url: str) -> None:
        tenant_settings = self.settings.tenant
        await self.orchestrator.register_tenant(
            tenant,
            okapi_url=okapi_url,
            parameters={
                "loadReference": str(tenant_settings.load_reference).lower(),
                "loadSample": str(tenant_settings.load_sample).lower(),
            },
        )

    # =========================================================================
    # Per test
    # =========================================================================

    def _require_operational(self) -> HarnessContext:
        if self.context is None or not self.orchestrator.is_operational:
            raise HarnessError(
                "Test traffic requires an operational service; run global_setup first",
                details={"state": self.orchestrator.state.value},
            )
        return self.context

    async def per_test_setup(self, test_id: str | None = None) -> RequestSpec:
        """Start the stub server and empty all mutable tables."""
        context = self._require_operational()
        test_id_var.set(test_id)
        phase_var.set("test")
        failures: dict[str, BaseException] = {}

        try:
            await self.stub_server.start(context.stub.port)
        except Exception as e:
            failures["stub server"] = e

        db = self.settings.database
        chains: dict[str, Awaitable[dict[str, BaseException]]] = {
            "module tables": self._clear_tables(db.module_tables, None),
            "tenant tables": self._clear_tables(db.tenant_tables, context.tenant.tenant_id),
        }
        results = await asyncio.gather(*chains.values(), return_exceptions=True)
        for chain, result in zip(chains, results):
            if isinstance(result, BaseException):
                failures[chain] = result
            else:
                failures.update(result)

        if failures:
            for name, error in failures.items():
                logger.error(f"Per-test setup: {name} failed: {error!r}")
            raise TestSetupError(failures)

        return RequestSpec.for_context(context)

    async def _clear_tables(
        self, tables: list[str], tenant: str | None
    ) -> dict[str, BaseException]:
        """Clear ``tables`` in order, attempting each even if one fails."""
        failures: dict[str, BaseException] = {}
        schema = self.database.schema_for(tenant)
        for table in tables:
            try:
                await self.database.clear_table(table, tenant)
            except Exception as e:
                failures[f"{schema}.{table}"] = e
        return failures

    async def per_test_teardown(self) -> None:
        """Drop stub definitions and stop the stub server."""
        try:
            self.stub_server.reset()
            await self.stub_server.stop()
        finally:
            test_id_var.set(None)
            phase_var.set(None)

    # =========================================================================
    # Global teardown
    # =========================================================================

    async def global_teardown(self) -> None:
        """Release everything, best effort. Safe to call more than once."""
        if self._torn_down:
            return
        self._torn_down = True
        phase_var.set("teardown")

        steps: list[tuple[str, Callable[[], Any]]] = [
            ("shut down service", self.orchestrator.shutdown),
            ("stop stub server", self.stub_server.stop),
            ("close database connections", self.database.close_connections),
        ]
        if self.mode is not None and self.mode.owns_database:
            steps.append(("stop database", self.database.stop))
        steps += [
            ("clear broker endpoint", self.environment.clear),
            ("stop broker", self.broker.stop),
        ]

        failures: dict[str, BaseException] = {}
        for name, operation in steps:
            logger.info(f"Teardown: {name}")
            try:
                result = operation()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Teardown step '{name}' failed")
                failures[name] = e

        if failures:
            raise HarnessTeardownError(failures)
        logger.info("Harness torn down")
