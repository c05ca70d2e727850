"""Service under test, tenant handshake and downstream stubs."""

from .orchestrator import ServiceOrchestrator, ServiceState, load_app_factory
from .server import InProcessServer
from .stub_server import RecordedRequest, Stub, StubServer
from .tenant import TenantAttributes, TenantClient


__all__ = [
    "InProcessServer",
    "RecordedRequest",
    "ServiceOrchestrator",
    "ServiceState",
    "Stub",
    "StubServer",
    "TenantAttributes",
    "TenantClient",
    "load_app_factory",
]
