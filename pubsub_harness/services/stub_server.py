"""
HTTP stub server faking the downstream dependencies of the service under test.

Stubs are matched on method and path, most recently added first. Every
request is journalled so tests can verify what the service called, and
unmatched requests are answered with 404.

Usage:
    stubs = StubServer()
    await stubs.start(port)
    stubs.stub_for(Stub(method="GET", path="/users", json={"users": []}))
    ...
    assert stubs.find_requests("GET", "/users")
    await stubs.stop()
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from pubsub_harness.core.exceptions import HarnessError
from pubsub_harness.core.logging import get_logger

from .server import InProcessServer


logger = get_logger("stubs")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@dataclass
class Stub:
    """A canned response for requests matching method and path."""

    method: str = "GET"
    path: str | None = None
    path_pattern: str | None = None
    status: int = 200
    json: Any = None
    body: str | bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if (self.path is None) == (self.path_pattern is None):
            raise ValueError("Stub needs exactly one of path or path_pattern")
        self.method = self.method.upper()
        self._pattern = re.compile(self.path_pattern) if self.path_pattern else None

    def matches(self, method: str, path: str) -> bool:
        if self.method != "ANY" and self.method != method.upper():
            return False
        if self._pattern is not None:
            return self._pattern.fullmatch(path) is not None
        return self.path == path

    def to_response(self) -> Response:
        if self.json is not None:
            return JSONResponse(self.json, status_code=self.status, headers=self.headers)
        return Response(
            content=self.body or b"",
            status_code=self.status,
            headers=self.headers,
        )


@dataclass
class RecordedRequest:
    """A request received by the stub server."""

    method: str
    path: str
    query: str
    headers: dict[str, str]
    body: bytes
    matched: bool

    def json(self) -> Any:
        return json.loads(self.body)


class StubServer:
    """In-process HTTP server answering from registered stubs."""

    def __init__(self, host: str = "localhost", *, log_requests: bool = True):
        self.host = host
        self.log_requests = log_requests
        self._stubs: list[Stub] = []
        self._journal: list[RecordedRequest] = []
        self._server: InProcessServer | None = None
        self._port: int | None = None
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Harness stub server", docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/{path:path}", methods=ALL_METHODS)
        async def handle(request: Request, path: str) -> Response:
            return await self._handle(request)

        return app

    async def _handle(self, request: Request) -> Response:
        method = request.method
        path = request.url.path
        stub = self._match(method, path)

        self._journal.append(
            RecordedRequest(
                method=method,
                path=path,
                query=request.url.query,
                headers=dict(request.headers),
                body=await request.body(),
                matched=stub is not None,
            )
        )

        if stub is None:
            logger.warning(f"No stub for {method} {path}")
            return JSONResponse(
                {"error": "NO_STUB", "message": f"No stub for {method} {path}"},
                status_code=404,
            )

        if self.log_requests:
            logger.info(f"Stub hit: {method} {path} -> {stub.status}")
        return stub.to_response()

    def _match(self, method: str, path: str) -> Stub | None:
        for stub in reversed(self._stubs):
            if stub.matches(method, path):
                return stub
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.is_running

    @property
    def url(self) -> str:
        if self._port is None:
            raise HarnessError("Stub server port has not been assigned")
        return f"http://{self.host}:{self._port}"

    async def start(self, port: int) -> None:
        if self.is_running:
            return
        self._port = port
        server = InProcessServer(self.app, self.host, port, name="stub-server")
        await server.start()
        self._server = server

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            await server.stop()

    # =========================================================================
    # Stubs and journal
    # =========================================================================

    def stub_for(self, stub: Stub) -> Stub:
        self._stubs.append(stub)
        return stub

    def reset(self, stubs: Iterable[Stub] | None = None) -> None:
        """Drop all stubs and journalled requests, then install ``stubs``."""
        self._stubs.clear()
        self._journal.clear()
        for stub in stubs or ():
            self.stub_for(stub)

    @property
    def stubs(self) -> list[Stub]:
        return list(self._stubs)

    @property
    def received_requests(self) -> list[RecordedRequest]:
        return list(self._journal)

    def find_requests(self, method: str, path: str) -> list[RecordedRequest]:
        method = method.upper()
        return [r for r in self._journal if r.method == method and r.path == path]
