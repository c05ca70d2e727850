"""
Harness logging.

Every record is tagged with the harness phase (global setup, per test,
global teardown) and, during a test, the pytest node id, so interleaved
output from the service under test, the stub server and the harness can be
told apart. Token and password values are masked before anything is written.

Usage:
    setup_logging(settings)
    logger = get_logger("broker")
    logger.info(f"Broker ready at {address}")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .config import HarnessSettings


ROOT_LOGGER = "pubsub_harness"

# Test case currently being prepared or run
test_id_var: ContextVar[Optional[str]] = ContextVar("test_id", default=None)

# Harness lifecycle phase: setup, test or teardown
phase_var: ContextVar[Optional[str]] = ContextVar("harness_phase", default=None)

# Library loggers that are too chatty at INFO during a test run
NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiokafka": logging.WARNING,
    "docker": logging.WARNING,
    "urllib3": logging.WARNING,
}


def _context_fields() -> Dict[str, str]:
    fields: Dict[str, str] = {}
    phase = phase_var.get()
    if phase:
        fields["phase"] = phase
    test_id = test_id_var.get()
    if test_id:
        fields["test_id"] = test_id
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for CI log collectors."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_context_fields(),
        }
        extra = getattr(record, "extra_fields", None)
        if extra:
            entry.update(extra)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Readable single-line output for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        tags = "".join(f"[{value}] " for value in _context_fields().values())
        line = f"{stamp} {record.levelname:<8} {tags}{record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class SensitiveDataFilter(logging.Filter):
    """Mask credentials in rendered messages."""

    SENSITIVE_KEYS = ("x-okapi-token", "token", "password", "secret", "authorization")

    # key=value, key: value, 'key': 'value' and "key": "value"
    _PATTERNS = [
        re.compile(rf"""(['"]?{re.escape(key)}['"]?\s*[=:]\s*)[^\s,}}\[\]]+""", re.IGNORECASE)
        for key in SENSITIVE_KEYS
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        lowered = message.lower()
        if not any(key in lowered for key in self.SENSITIVE_KEYS):
            return True

        for pattern in self._PATTERNS:
            message = pattern.sub(r"\1[REDACTED]", message)
        record.msg = message
        record.args = None
        return True


def setup_logging(settings: "HarnessSettings") -> None:
    """Route harness logs to stdout in the configured format."""
    level = getattr(logging, settings.log_level)
    harness_logger = logging.getLogger(ROOT_LOGGER)
    harness_logger.setLevel(level)

    # Replace rather than stack handlers on repeated setup
    for existing in list(harness_logger.handlers):
        harness_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        StructuredFormatter() if settings.log_format == "json" else TextFormatter()
    )
    handler.addFilter(SensitiveDataFilter())
    harness_logger.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> logging.Logger:
    """Logger under the harness namespace, e.g. ``pubsub_harness.broker``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
