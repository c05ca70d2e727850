"""Harness exception taxonomy.

Three families, matching how far a failure reaches:

- setup errors abort the whole suite (``HarnessSetupError`` and the causes
  it wraps),
- ``TestSetupError`` fails only the test case being prepared,
- ``HarnessTeardownError`` is reported after every teardown step was tried.
"""

from __future__ import annotations

from typing import Any, Mapping


class HarnessError(Exception):
    """Base harness exception with a structured representation."""

    error_code: str = "HARNESS_ERROR"
    message: str = "Harness operation failed"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


# =============================================================================
# Fatal setup causes
# =============================================================================


class ConfigurationError(HarnessError):
    """Harness configuration is invalid."""

    error_code = "CONFIGURATION_ERROR"
    message = "Invalid harness configuration"


class ContainerStartupError(HarnessError):
    """A Docker container exited before signalling readiness."""

    error_code = "CONTAINER_STARTUP_ERROR"
    message = "Container failed to start"


class DatabaseStartupError(HarnessError):
    """Database could not be started or reached."""

    error_code = "DATABASE_STARTUP_ERROR"
    message = "Database unavailable"


class BrokerStartupError(HarnessError):
    """Broker could not be provisioned."""

    error_code = "BROKER_STARTUP_ERROR"
    message = "Broker provisioning failed"


class DeploymentError(HarnessError):
    """Service under test did not come up."""

    error_code = "DEPLOYMENT_ERROR"
    message = "Service deployment failed"


class TenantRegistrationError(HarnessError):
    """Tenant registration handshake failed."""

    error_code = "TENANT_REGISTRATION_ERROR"
    message = "Tenant registration failed"


class HarnessSetupError(HarnessError):
    """Global setup failed; no test may run."""

    error_code = "SETUP_FAILED"
    message = "Harness global setup failed"

    def __init__(self, step: str, cause: BaseException | None = None):
        self.step = step
        self.cause = cause
        text = f"Global setup failed at step '{step}'"
        if cause is not None:
            text += f": {cause}"
        super().__init__(text, details={"step": step})


# =============================================================================
# Contract violations
# =============================================================================


class BrokerNotStartedError(HarnessError):
    """Broker address requested before the broker started."""

    error_code = "BROKER_NOT_STARTED"
    message = "Broker has not been started"


class InvalidStateTransitionError(HarnessError):
    """Service orchestrator asked to skip or repeat a lifecycle state."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: Any, target: Any):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )


# =============================================================================
# Per-test and teardown
# =============================================================================


def _describe(failures: Mapping[str, BaseException]) -> str:
    return "; ".join(f"{name}: {exc!r}" for name, exc in failures.items())


class TestSetupError(HarnessError):
    """Per-test reset failed; only the current test fails."""

    __test__ = False  # not a pytest test class

    error_code = "TEST_SETUP_FAILED"

    def __init__(self, failures: Mapping[str, BaseException]):
        self.failures = dict(failures)
        super().__init__(
            f"Per-test setup failed: {_describe(self.failures)}",
            details={"failed": sorted(self.failures)},
        )


class HarnessTeardownError(HarnessError):
    """One or more teardown steps failed after all were attempted."""

    error_code = "TEARDOWN_FAILED"

    def __init__(self, failures: Mapping[str, BaseException]):
        self.failures = dict(failures)
        super().__init__(
            f"Global teardown incomplete: {_describe(self.failures)}",
            details={"failed": sorted(self.failures)},
        )
