"""Database controller: start/stop, schema-bound connections, table clearing."""

from __future__ import annotations

import asyncio
import os
from typing import Callable, Mapping

import asyncpg
import docker
from asyncpg import Pool

from pubsub_harness.containers import ManagedContainer
from pubsub_harness.context import ConnectionSettings, DatabaseMode
from pubsub_harness.core.config import DatabaseSettings
from pubsub_harness.core.exceptions import DatabaseStartupError, HarnessError
from pubsub_harness.core.logging import get_logger
from pubsub_harness.network import next_free_port

from .connection import (
    DatabaseClient,
    load_environment_config,
    load_external_config,
)


logger = get_logger("database")

POSTGRES_READY = r"database system is ready to accept connections"


class DatabaseController:
    """
    Owns the harness database connection and, in embedded mode, the server.

    Connections are handed out per schema: ``get_connection()`` is bound to
    the module schema, ``get_connection(tenant)`` to ``<tenant>_<module>``.
    All handles share one asyncpg pool.
    """

    def __init__(
        self,
        settings: DatabaseSettings,
        *,
        schema_suffix: str = "mod_pubsub",
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
        environ: Mapping[str, str] | None = None,
    ):
        self.settings = settings
        self.schema_suffix = schema_suffix
        self._docker_client_factory = docker_client_factory
        self._docker_client: docker.DockerClient | None = None
        self._environ = os.environ if environ is None else environ

        self.mode: DatabaseMode | None = None
        self._connection: ConnectionSettings | None = None
        self._container: ManagedContainer | None = None
        self._pool: Pool | None = None
        self._clients: dict[str | None, DatabaseClient] = {}
        self._table_locks: dict[tuple[str, str], asyncio.Lock] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def connection_settings(self) -> ConnectionSettings:
        if self._connection is None:
            raise HarnessError("Database has not been started")
        return self._connection

    @property
    def is_started(self) -> bool:
        return self._pool is not None

    async def start(self, mode: DatabaseMode) -> ConnectionSettings:
        """Bring the database up for ``mode`` and open the connection pool."""
        # Leftovers from an earlier start would hold connections to a dead server
        await self.close_connections()

        if mode is DatabaseMode.EMBEDDED:
            connection = await self._start_embedded()
        elif mode is DatabaseMode.EXTERNAL:
            logger.info(f"Using external database config {self.settings.config_path}")
            connection = load_external_config(self.settings.config_path)
        else:
            logger.info("Using environment database settings")
            connection = load_environment_config(self._environ)

        self.mode = mode
        self._connection = connection
        self._pool = await self._open_pool(connection)
        logger.info(
            f"Database ready ({mode.value}) at {connection.host}:{connection.port}/{connection.database}"
        )
        return connection

    async def _start_embedded(self) -> ConnectionSettings:
        port = next_free_port(self.settings.host)
        if self._docker_client is None:
            self._docker_client = self._docker_client_factory()

        self._container = ManagedContainer(
            self._docker_client,
            role="postgres",
            image=self.settings.image,
            ready_pattern=POSTGRES_READY,
            # initdb runs a temporary server first
            ready_occurrences=2,
            environment={
                "POSTGRES_USER": self.settings.username,
                "POSTGRES_PASSWORD": self.settings.password,
                "POSTGRES_DB": self.settings.database,
            },
            ports={"5432/tcp": port},
        )
        await self._container.start()

        return ConnectionSettings(
            host=self.settings.host,
            port=port,
            username=self.settings.username,
            password=self.settings.password,
            database=self.settings.database,
        )

    async def _open_pool(self, connection: ConnectionSettings) -> Pool:
        try:
            return await asyncpg.create_pool(
                dsn=connection.dsn,
                min_size=self.settings.pool_min_size,
                max_size=self.settings.pool_max_size,
                command_timeout=60,
                server_settings={"application_name": "pubsub-harness"},
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseStartupError(
                f"Cannot connect to database at {connection.host}:{connection.port}: {e}",
                details={"host": connection.host, "port": connection.port},
            ) from e

    async def close_connections(self) -> None:
        """Close the pool and drop all cached handles."""
        pool, self._pool = self._pool, None
        self._clients.clear()
        if pool is not None:
            await pool.close()
            logger.info("Database pool closed")

    async def stop(self) -> None:
        """Stop the embedded database server."""
        container, self._container = self._container, None
        try:
            await self.close_connections()
        finally:
            try:
                if container is not None:
                    await container.stop()
            finally:
                if self._docker_client is not None:
                    self._docker_client.close()
                    self._docker_client = None

    # =========================================================================
    # Connections and state reset
    # =========================================================================

    def schema_for(self, tenant: str | None = None) -> str:
        if tenant is None:
            return self.settings.module_schema
        return f"{tenant}_{self.schema_suffix}".lower()

    def get_connection(self, tenant: str | None = None) -> DatabaseClient:
        """Handle bound to the module schema, or to a tenant's schema."""
        if self._pool is None:
            raise HarnessError("Database has not been started")
        client = self._clients.get(tenant)
        if client is None:
            client = DatabaseClient(self._pool, self.schema_for(tenant))
            self._clients[tenant] = client
        return client

    def _lock_for(self, schema: str, table: str) -> asyncio.Lock:
        key = (schema, table)
        lock = self._table_locks.get(key)
        if lock is None:
            lock = self._table_locks[key] = asyncio.Lock()
        return lock

    async def clear_table(self, table: str, tenant: str | None = None) -> None:
        """Delete all rows of ``table``; waits until the delete has completed."""
        client = self.get_connection(tenant)
        async with self._lock_for(client.schema, table):
            status = await client.delete_all(table)
        logger.debug(f"Cleared {client.schema}.{table} ({status})")

    async def count_rows(self, table: str, tenant: str | None = None) -> int:
        return await self.get_connection(tenant).count(table)
