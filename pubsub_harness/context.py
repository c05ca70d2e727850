"""Value types shared across the harness.

Everything here is immutable and created once per suite run. The
``HarnessContext`` and ``ServiceContext`` structs are passed by reference to
whoever needs them instead of being looked up from ambient globals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import quote_plus

from pubsub_harness.core.exceptions import ConfigurationError


class DatabaseMode(Enum):
    """How the database controller obtains its connection."""

    EMBEDDED = "embedded"  # container started and owned by the harness
    EXTERNAL = "external"  # JSON connection file
    ENVIRONMENT = "environment"  # DB_* environment variables

    @classmethod
    def resolve(cls, value: str) -> "DatabaseMode":
        """Parse a configured mode, failing with the list of valid choices."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(f"'{m.value}'" for m in cls)
            raise ConfigurationError(
                f"No understood database choice made: {value!r}. "
                f"Set database.mode to one of {choices}",
                details={"mode": value, "choices": [m.value for m in cls]},
            ) from None

    @property
    def owns_database(self) -> bool:
        return self is DatabaseMode.EMBEDDED


@dataclass(frozen=True)
class ServiceEndpoint:
    """Host and port an HTTP server listens on."""

    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class BrokerEndpoint:
    """Advertised broker address."""

    host: str
    port: int

    @classmethod
    def from_address(cls, address: str) -> "BrokerEndpoint":
        host, sep, port = address.strip().rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"Not a host:port broker address: {address!r}")
        return cls(host=host, port=int(port))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TenantIdentity:
    """Consumer registered with the service under test."""

    tenant_id: str
    token: str


@dataclass(frozen=True)
class ConnectionSettings:
    """Resolved PostgreSQL connection parameters."""

    host: str
    port: int
    username: str
    password: str
    database: str

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{quote_plus(self.username)}:{quote_plus(self.password)}"
            f"@{self.host}:{self.port}/{quote_plus(self.database)}"
        )

    def __repr__(self) -> str:
        return (
            f"ConnectionSettings(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, database={self.database!r})"
        )


@dataclass(frozen=True)
class ServiceContext:
    """Configuration handed to the service factory at deploy time."""

    host: str
    http_port: int
    broker: BrokerEndpoint
    database: ConnectionSettings
    stub_url: str
    module_id: str
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))

    @property
    def endpoint(self) -> ServiceEndpoint:
        return ServiceEndpoint(self.host, self.http_port)


@dataclass(frozen=True)
class HarnessContext:
    """Everything a test needs to know about the running environment."""

    mode: DatabaseMode
    service: ServiceEndpoint
    stub: ServiceEndpoint
    broker: BrokerEndpoint
    tenant: TenantIdentity
    module_id: str
    topics: tuple[str, ...] = ()
