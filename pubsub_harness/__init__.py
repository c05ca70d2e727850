"""
Integration-test harness for a message-driven HTTP service.

Brings up an embedded Kafka broker, a PostgreSQL database and the service
under test, registers a tenant once, empties mutable tables before every
test and tears everything down afterwards.
"""

from pubsub_harness.context import (
    BrokerEndpoint,
    ConnectionSettings,
    DatabaseMode,
    HarnessContext,
    ServiceContext,
    ServiceEndpoint,
    TenantIdentity,
)
from pubsub_harness.controller import HarnessController
from pubsub_harness.core.config import HarnessSettings
from pubsub_harness.request_spec import RequestSpec
from pubsub_harness.services import Stub, StubServer


__all__ = [
    "BrokerEndpoint",
    "ConnectionSettings",
    "DatabaseMode",
    "HarnessContext",
    "HarnessController",
    "HarnessSettings",
    "RequestSpec",
    "ServiceContext",
    "ServiceEndpoint",
    "Stub",
    "StubServer",
    "TenantIdentity",
]
