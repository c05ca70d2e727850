"""Database controller and schema-bound connections."""

from .connection import (
    DatabaseClient,
    load_environment_config,
    load_external_config,
    quote_ident,
)
from .controller import DatabaseController


__all__ = [
    "DatabaseClient",
    "DatabaseController",
    "load_environment_config",
    "load_external_config",
    "quote_ident",
]
