"""
System test configuration.

These tests run the real stack: PostgreSQL and Kafka containers, the sample
service deployed in-process and the stub server. They are skipped when no
Docker daemon is reachable.

Run with:
    pytest system_tests
"""

from __future__ import annotations

import docker
import pytest

from pubsub_harness.core.config import HarnessSettings
from pubsub_harness.core.logging import setup_logging

# Re-exported so pytest registers them for this directory
from pubsub_harness.testing.fixtures import (  # noqa: F401
    api_client,
    harness,
    harness_database,
    harness_spec,
    stub_server,
)

SAMPLE_SERVICE = "system_tests.sample_service:create_app"


def _docker_available() -> bool:
    try:
        client = docker.from_env()
    except docker.errors.DockerException:
        return False
    try:
        return bool(client.ping())
    except Exception:
        return False
    finally:
        client.close()


DOCKER_AVAILABLE = _docker_available()


@pytest.fixture(scope="session")
def harness_settings() -> HarnessSettings:
    """Settings from the environment, deploying the sample service unless overridden."""
    settings = HarnessSettings()
    if settings.service.app_factory is None:
        settings.service.app_factory = SAMPLE_SERVICE
    setup_logging(settings)
    return settings


def pytest_collection_modifyitems(config, items):
    """Mark everything here as a system test; skip without Docker."""
    skip_docker = pytest.mark.skip(reason="Docker daemon not reachable")
    for item in items:
        if "system_tests" not in item.nodeid:
            continue
        item.add_marker(pytest.mark.system)
        if not DOCKER_AVAILABLE:
            item.add_marker(skip_docker)
