"""PostgreSQL connection settings and schema-bound client handles.

Connection parameters come from one of three places depending on the
database mode:

- embedded: the container the harness started,
- external: a JSON file such as ``postgres-conf-local.json``::

      {"host": "localhost", "port": 5432, "username": "folio_admin",
       "password": "folio_admin", "database": "okapi_modules"}

- environment: ``DB_HOST``, ``DB_PORT``, ``DB_USERNAME``, ``DB_PASSWORD``,
  ``DB_DATABASE``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from asyncpg import Pool

from pubsub_harness.context import ConnectionSettings
from pubsub_harness.core.exceptions import ConfigurationError


DEFAULT_PORT = 5432

ENV_HOST = "DB_HOST"
ENV_PORT = "DB_PORT"
ENV_USERNAME = "DB_USERNAME"
ENV_PASSWORD = "DB_PASSWORD"
ENV_DATABASE = "DB_DATABASE"


def _parse_port(value: Any, source: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid database port {value!r} in {source}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"Database port {port} out of range in {source}")
    return port


def load_external_config(path: str | os.PathLike[str]) -> ConnectionSettings:
    """Read connection settings from a JSON file."""
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigurationError(
            f"Database config file not found: {config_path}",
            details={"path": str(config_path)},
        )

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Database config file {config_path} is not valid JSON: {e}") from e

    missing = [key for key in ("host", "username", "password", "database") if key not in data]
    if missing:
        raise ConfigurationError(
            f"Database config file {config_path} is missing {', '.join(missing)}",
            details={"path": str(config_path), "missing": missing},
        )

    return ConnectionSettings(
        host=str(data["host"]),
        port=_parse_port(data.get("port", DEFAULT_PORT), str(config_path)),
        username=str(data["username"]),
        password=str(data["password"]),
        database=str(data["database"]),
    )


def load_environment_config(environ: Mapping[str, str] | None = None) -> ConnectionSettings:
    """Read connection settings from DB_* environment variables."""
    env = os.environ if environ is None else environ

    host = env.get(ENV_HOST)
    if not host:
        raise ConfigurationError(
            f"{ENV_HOST} must be set when database mode is 'environment'"
        )

    return ConnectionSettings(
        host=host,
        port=_parse_port(env.get(ENV_PORT, DEFAULT_PORT), ENV_PORT),
        username=env.get(ENV_USERNAME, "postgres"),
        password=env.get(ENV_PASSWORD, ""),
        database=env.get(ENV_DATABASE, "postgres"),
    )


def quote_ident(name: str) -> str:
    """Quote a SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class DatabaseClient:
    """Connection handle bound to one schema of the shared pool."""

    def __init__(self, pool: Pool, schema: str):
        self.pool = pool
        self.schema = schema

    def qualified(self, table: str) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(table)}"

    async def execute(self, query: str, *args) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_val(self, query: str, *args) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def delete_all(self, table: str) -> str:
        """Delete every row of ``table``."""
        return await self.execute(f"DELETE FROM {self.qualified(table)}")

    async def count(self, table: str) -> int:
        result = await self.fetch_val(f"SELECT COUNT(*) FROM {self.qualified(table)}")
        return int(result or 0)

    def __repr__(self) -> str:
        return f"DatabaseClient(schema={self.schema!r})"
