"""In-process uvicorn server with an explicit readiness signal.

``InProcessServer.start()`` returns once uvicorn has run the application's
lifespan startup and is accepting connections on a socket the harness bound
itself, so the port is known before the application is built and bind errors
surface as ordinary exceptions.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Any, Iterator

import uvicorn

from pubsub_harness.core.exceptions import DeploymentError
from pubsub_harness.core.logging import get_logger
from pubsub_harness.network import bind_socket


logger = get_logger("server")


class _SignalledServer(uvicorn.Server):
    """uvicorn server that reports readiness and leaves signals alone."""

    def __init__(self, config: uvicorn.Config):
        super().__init__(config)
        self.ready = asyncio.Event()

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        # Signal handling belongs to the test runner
        yield

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if not self.should_exit:
            self.ready.set()


class _LifespanTracker:
    """ASGI wrapper that remembers the task running the app's lifespan.

    uvicorn drives the lifespan in a task of its own; cancelling ``serve()``
    does not reach it, so a startup that never completes has to be cancelled
    separately.
    """

    def __init__(self, app: Any):
        self.app = app
        self.task: asyncio.Task[Any] | None = None

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] == "lifespan":
            self.task = asyncio.current_task()
        await self.app(scope, receive, send)


class InProcessServer:
    """Serve an ASGI app in the running event loop."""

    def __init__(
        self,
        app: Any,
        host: str,
        port: int,
        *,
        name: str = "server",
        log_level: str = "warning",
    ):
        self.app = app
        self.host = host
        self.port = port
        self.name = name
        self.log_level = log_level
        self._server: _SignalledServer | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._lifespan: _LifespanTracker | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start serving; completes once the server is listening."""
        try:
            self._socket = bind_socket(self.host, self.port)
        except OSError as e:
            raise DeploymentError(
                f"{self.name}: cannot bind {self.host}:{self.port}: {e}",
                details={"host": self.host, "port": self.port},
            ) from e

        self._lifespan = _LifespanTracker(self.app)
        config = uvicorn.Config(
            self._lifespan,
            lifespan="on",
            log_level=self.log_level,
            access_log=False,
        )
        self._server = _SignalledServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name=f"{self.name}-serve",
        )

        ready = asyncio.create_task(self._server.ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, self._task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()
        if ready not in done:
            error = self._task.exception()
            self._close_socket()
            self._task = None
            raise DeploymentError(
                f"{self.name} exited before it was ready"
                + (f": {error}" if error else ""),
                details={"host": self.host, "port": self.port},
            ) from error

        logger.info(f"{self.name} listening on {self.url}")

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait for the serve task to finish."""
        server, task, lifespan = self._server, self._task, self._lifespan
        self._server = None
        self._task = None
        self._lifespan = None
        try:
            if server is None or task is None:
                return
            if server.ready.is_set():
                server.should_exit = True
                await task
            else:
                # Still starting up; a graceful exit would wait on startup
                pending = [task]
                if lifespan is not None and lifespan.task is not None:
                    pending.append(lifespan.task)
                for stuck in pending:
                    stuck.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"{self.name} on {self.url} stopped")
        finally:
            self._close_socket()

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
