"""
Service orchestrator: deploys the service under test and registers the tenant.

States:
    NOT_DEPLOYED -> DEPLOYING -> READY -> REGISTERING_TENANT -> OPERATIONAL
        -> SHUTTING_DOWN -> STOPPED

Errors while DEPLOYING or REGISTERING_TENANT move to FAILED, which is
terminal. Test traffic is only allowed while OPERATIONAL.

Usage:
    orchestrator = ServiceOrchestrator(settings.service)
    await orchestrator.deploy(context)
    await orchestrator.register_tenant(identity, okapi_url=service_url)
    ...
    await orchestrator.shutdown()
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from uvicorn.importer import ImportFromStringError, import_from_string

from pubsub_harness.context import ServiceContext, TenantIdentity
from pubsub_harness.core.config import ServiceSettings
from pubsub_harness.core.exceptions import (
    DeploymentError,
    HarnessError,
    InvalidStateTransitionError,
)
from pubsub_harness.core.logging import get_logger

from .server import InProcessServer
from .tenant import TenantAttributes, TenantClient


logger = get_logger("orchestrator")


class ServiceState(Enum):
    """Lifecycle states of the service under test."""

    NOT_DEPLOYED = "not_deployed"
    DEPLOYING = "deploying"
    READY = "ready"
    REGISTERING_TENANT = "registering_tenant"
    OPERATIONAL = "operational"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.NOT_DEPLOYED: frozenset({ServiceState.DEPLOYING}),
    ServiceState.DEPLOYING: frozenset({ServiceState.READY, ServiceState.FAILED}),
    ServiceState.READY: frozenset(
        {ServiceState.REGISTERING_TENANT, ServiceState.SHUTTING_DOWN}
    ),
    ServiceState.REGISTERING_TENANT: frozenset(
        {ServiceState.OPERATIONAL, ServiceState.FAILED}
    ),
    ServiceState.OPERATIONAL: frozenset({ServiceState.SHUTTING_DOWN}),
    ServiceState.SHUTTING_DOWN: frozenset({ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
    ServiceState.FAILED: frozenset(),
}

AppFactory = Callable[[ServiceContext], Any]


def load_app_factory(import_string: str | None) -> AppFactory:
    """Resolve ``module:callable`` to the service's app factory."""
    if not import_string:
        raise DeploymentError(
            "No service factory configured; set service.app_factory "
            "(PUBSUB_TEST_SERVICE__APP_FACTORY)"
        )
    try:
        factory = import_from_string(import_string)
    except ImportFromStringError as e:
        raise DeploymentError(f"Cannot load service factory: {e}") from e
    if not callable(factory):
        raise DeploymentError(f"Service factory {import_string} is not callable")
    return factory


class ServiceOrchestrator:
    """Drives the service under test through its lifecycle."""

    def __init__(
        self,
        settings: ServiceSettings,
        *,
        app_factory: AppFactory | None = None,
        tenant_client_factory: Callable[..., TenantClient] = TenantClient,
    ):
        self.settings = settings
        self._app_factory = app_factory
        self._tenant_client_factory = tenant_client_factory
        self._state = ServiceState.NOT_DEPLOYED
        self._server: InProcessServer | None = None
        self.context: ServiceContext | None = None
        self.tenant: TenantIdentity | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_operational(self) -> bool:
        return self._state is ServiceState.OPERATIONAL

    @property
    def base_url(self) -> str:
        if self.context is None:
            raise HarnessError("Service has not been deployed")
        return self.context.endpoint.url

    def _transition(self, target: ServiceState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(self._state, target)
        logger.debug(f"Service state {self._state.value} -> {target.value}")
        self._state = target

    async def deploy(self, context: ServiceContext) -> None:
        """Start the service; returns once it is listening."""
        self._transition(ServiceState.DEPLOYING)
        self.context = context
        try:
            factory = self._app_factory or load_app_factory(self.settings.app_factory)
            app = factory(context)
            self._server = InProcessServer(
                app,
                context.host,
                context.http_port,
                name=self.settings.module_name,
                log_level=self.settings.log_level,
            )
            await self._server.start()
        except Exception as e:
            self._transition(ServiceState.FAILED)
            if isinstance(e, DeploymentError):
                raise
            raise DeploymentError(
                f"Deploying {self.settings.module_id} failed: {e}"
            ) from e
        self._transition(ServiceState.READY)

    async def register_tenant(
        self,
        identity: TenantIdentity,
        *,
        okapi_url: str | None = None,
        parameters: dict[str, str] | None = None,
    ) -> None:
        """One-shot tenant handshake. A failure is terminal and not retried."""
        self._transition(ServiceState.REGISTERING_TENANT)
        client = self._tenant_client_factory(
            self.base_url, identity, okapi_url=okapi_url
        )
        attributes = TenantAttributes(
            module_to=self.settings.module_id,
            parameters=parameters or {},
        )
        try:
            await client.post_tenant(attributes)
        except Exception:
            self._transition(ServiceState.FAILED)
            raise
        self.tenant = identity
        self._transition(ServiceState.OPERATIONAL)

    async def shutdown(self) -> None:
        """Stop the service. Safe in any state."""
        if self._state in (ServiceState.NOT_DEPLOYED, ServiceState.STOPPED):
            return

        server, self._server = self._server, None
        if self._state in (ServiceState.DEPLOYING, ServiceState.REGISTERING_TENANT):
            # Setup was interrupted mid-step
            self._transition(ServiceState.FAILED)
        if self._state is ServiceState.FAILED:
            # Terminal; only release what is still running
            if server is not None:
                await server.stop()
            return

        self._transition(ServiceState.SHUTTING_DOWN)
        try:
            if server is not None:
                await server.stop()
        finally:
            self._transition(ServiceState.STOPPED)
