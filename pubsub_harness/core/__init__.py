"""Core infrastructure: settings, logging, exceptions."""

from .config import (
    BrokerSettings,
    DatabaseSettings,
    HarnessSettings,
    ServiceSettings,
    StubSettings,
    TenantSettings,
    get_settings,
)
from .exceptions import (
    BrokerNotStartedError,
    BrokerStartupError,
    ConfigurationError,
    ContainerStartupError,
    DatabaseStartupError,
    DeploymentError,
    HarnessError,
    HarnessSetupError,
    HarnessTeardownError,
    InvalidStateTransitionError,
    TenantRegistrationError,
    TestSetupError,
)
from .logging import get_logger, setup_logging


__all__ = [
    "BrokerNotStartedError",
    "BrokerSettings",
    "BrokerStartupError",
    "ConfigurationError",
    "ContainerStartupError",
    "DatabaseSettings",
    "DatabaseStartupError",
    "DeploymentError",
    "HarnessError",
    "HarnessSettings",
    "HarnessSetupError",
    "HarnessTeardownError",
    "InvalidStateTransitionError",
    "ServiceSettings",
    "StubSettings",
    "TenantRegistrationError",
    "TenantSettings",
    "TestSetupError",
    "get_logger",
    "get_settings",
    "setup_logging",
]
