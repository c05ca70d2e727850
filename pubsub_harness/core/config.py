"""Harness settings with Pydantic validation and environment loading."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """How the database is obtained and which tables hold mutable state."""

    mode: str = Field(
        default="embedded",
        description="Database choice: embedded, external or environment",
    )
    config_path: str = Field(
        default="postgres-conf-local.json",
        description="JSON connection file, used only when mode is external",
    )

    # Embedded container
    image: str = Field(default="postgres:16-alpine")
    host: str = Field(default="localhost")
    username: str = Field(default="folio_admin")
    password: str = Field(default="folio_admin")
    database: str = Field(default="okapi_modules")

    # Pool
    pool_min_size: int = Field(default=1, ge=1, le=10)
    pool_max_size: int = Field(default=4, ge=1, le=20)

    # Tables cleared before every test
    module_schema: str = Field(default="pubsub_config")
    module_tables: List[str] = Field(
        default_factory=lambda: ["messaging_module", "event_descriptor"]
    )
    tenant_tables: List[str] = Field(
        default_factory=lambda: ["audit_message", "audit_message_payload"]
    )

    @field_validator("mode")
    @classmethod
    def normalize_mode(cls, v: str) -> str:
        # Validity is checked when global setup resolves the mode
        return v.strip()


class BrokerSettings(BaseModel):
    """Embedded Kafka broker and the topics provisioned on it."""

    image: str = Field(default="apache/kafka:3.7.0")
    host: str = Field(default="localhost")
    topic_prefix: str = Field(default="pub-sub")
    event_types: List[str] = Field(default_factory=lambda: ["record_created"])
    partitions: int = Field(default=1, ge=1)
    replication_factor: int = Field(default=1, ge=1)
    request_timeout_ms: int = Field(default=30000, ge=1000)

    # Environment entries read by the service under test
    host_env_var: str = Field(default="KAFKA_HOST")
    port_env_var: str = Field(default="KAFKA_PORT")


class ServiceSettings(BaseModel):
    """The HTTP service under test."""

    app_factory: Optional[str] = Field(
        default=None,
        description="Import string 'module:callable' returning an ASGI app",
    )
    host: str = Field(default="localhost")
    module_name: str = Field(default="mod-pubsub")
    module_version: str = Field(default="1.0.0")
    log_level: str = Field(default="warning")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form deployment config passed to the app factory",
    )

    @property
    def module_id(self) -> str:
        return f"{self.module_name}-{self.module_version}"

    @property
    def schema_suffix(self) -> str:
        """Module part of the tenant schema name, e.g. mod_pubsub."""
        return self.module_name.replace("-", "_").lower()


class TenantSettings(BaseModel):
    """Tenant registered with the service before any test runs."""

    tenant_id: str = Field(default="diku")
    token: str = Field(default="token")
    load_reference: bool = Field(default=False)
    load_sample: bool = Field(default=False)


class StubSettings(BaseModel):
    """HTTP stub server faking downstream dependencies."""

    host: str = Field(default="localhost")
    log_requests: bool = Field(default=True)


class HarnessSettings(BaseSettings):
    """Harness settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PUBSUB_TEST_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    tenant: TenantSettings = Field(default_factory=TenantSettings)
    stub: StubSettings = Field(default_factory=StubSettings)

    # Upper bound for global setup; the framework-level boundary
    setup_timeout: Optional[float] = Field(default=300.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        lower = v.lower()
        if lower not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return lower


@lru_cache
def get_settings() -> HarnessSettings:
    """Get cached settings instance."""
    return HarnessSettings()
