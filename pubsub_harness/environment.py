"""Publication of the broker endpoint into the process environment.

The deployed service also receives the endpoint through its
``ServiceContext``; the environment entries serve services that read
``KAFKA_HOST``/``KAFKA_PORT`` at their own startup.
"""

from __future__ import annotations

import os
from typing import MutableMapping

from pubsub_harness.context import BrokerEndpoint
from pubsub_harness.core.logging import get_logger


logger = get_logger("environment")


class BrokerEnvironment:
    """Writes the broker endpoint once at setup and removes it at teardown."""

    def __init__(
        self,
        host_var: str = "KAFKA_HOST",
        port_var: str = "KAFKA_PORT",
        environ: MutableMapping[str, str] | None = None,
    ):
        self.host_var = host_var
        self.port_var = port_var
        self._environ = os.environ if environ is None else environ

    @property
    def is_published(self) -> bool:
        return self.host_var in self._environ or self.port_var in self._environ

    def publish(self, endpoint: BrokerEndpoint) -> None:
        self._environ[self.host_var] = endpoint.host
        self._environ[self.port_var] = str(endpoint.port)
        logger.info(f"Published {self.host_var}={endpoint.host} {self.port_var}={endpoint.port}")

    def clear(self) -> None:
        """Remove both entries. Clearing twice is not an error."""
        removed = [
            name
            for name in (self.host_var, self.port_var)
            if self._environ.pop(name, None) is not None
        ]
        if removed:
            logger.info(f"Cleared {', '.join(removed)}")
