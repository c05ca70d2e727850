"""
Managed Docker containers for embedded infrastructure.

The harness runs its embedded database and broker as containers through
the Docker SDK. Readiness is taken from the container's own log stream:
the wait blocks on the followed stream until the expected line appears,
and fails as soon as the stream ends (container exited).

Usage:
    container = ManagedContainer(
        client,
        role="postgres",
        image="postgres:16-alpine",
        ports={"5432/tcp": 54321},
        ready_pattern=r"ready to accept connections",
        ready_occurrences=2,
    )
    await container.start()
    ...
    await container.stop()
"""

from __future__ import annotations

import asyncio
import re
from collections import deque
from typing import TYPE_CHECKING

from pubsub_harness.core.exceptions import ContainerStartupError
from pubsub_harness.core.logging import get_logger

if TYPE_CHECKING:
    import docker
    from docker.models.containers import Container


logger = get_logger("containers")

ROLE_LABEL = "pubsub-harness.role"


def remove_stale_containers(client: "docker.DockerClient", role: str) -> int:
    """Force-remove containers left behind by an earlier, aborted run."""
    stale = client.containers.list(all=True, filters={"label": f"{ROLE_LABEL}={role}"})
    for container in stale:
        logger.info(f"Removing stale {role} container {container.short_id}")
        container.remove(force=True, v=True)
    return len(stale)


def wait_for_log(
    container: "Container",
    pattern: re.Pattern[str],
    occurrences: int = 1,
    tail_lines: int = 50,
) -> None:
    """Block until ``pattern`` has appeared ``occurrences`` times in the logs."""
    seen = 0
    buffer = ""
    tail: deque[str] = deque(maxlen=tail_lines)

    for chunk in container.logs(stream=True, follow=True):
        buffer += chunk.decode("utf-8", errors="replace")
        *lines, buffer = buffer.split("\n")
        for line in lines:
            tail.append(line)
            if pattern.search(line):
                seen += 1
                if seen >= occurrences:
                    return

    if buffer:
        tail.append(buffer)
    raise ContainerStartupError(
        f"Container {container.name} exited before becoming ready",
        details={"container": container.name, "logs": list(tail)},
    )


class ManagedContainer:
    """A single harness-owned container with an async start/stop lifecycle."""

    def __init__(
        self,
        client: "docker.DockerClient",
        *,
        role: str,
        image: str,
        ready_pattern: str,
        ready_occurrences: int = 1,
        environment: dict[str, str] | None = None,
        ports: dict[str, int] | None = None,
    ):
        self.client = client
        self.role = role
        self.image = image
        self.environment = environment or {}
        self.ports = ports or {}
        self._ready_pattern = re.compile(ready_pattern)
        self._ready_occurrences = ready_occurrences
        self._container: Container | None = None

    @property
    def is_running(self) -> bool:
        return self._container is not None

    @property
    def name(self) -> str | None:
        return self._container.name if self._container else None

    async def start(self) -> None:
        """Run the container and wait for its readiness log line."""
        await asyncio.to_thread(remove_stale_containers, self.client, self.role)

        logger.info(f"Starting {self.role} container from {self.image}")
        self._container = await asyncio.to_thread(
            self.client.containers.run,
            self.image,
            detach=True,
            environment=self.environment,
            ports=self.ports,
            labels={ROLE_LABEL: self.role},
        )
        await asyncio.to_thread(
            wait_for_log,
            self._container,
            self._ready_pattern,
            self._ready_occurrences,
        )
        logger.info(f"{self.role} container {self._container.short_id} is ready")

    async def stop(self, timeout: int = 10) -> None:
        """Stop and remove the container. Safe to call when not running."""
        container, self._container = self._container, None
        if container is None:
            return
        await asyncio.to_thread(container.stop, timeout=timeout)
        await asyncio.to_thread(container.remove, v=True)
        logger.info(f"{self.role} container {container.short_id} removed")
