"""
Embedded Kafka broker for the harness.

A single-node KRaft broker runs in a container and advertises
``<host>:<free port>`` so clients outside the container can reach it.
Topics are created with an aiokafka admin client once the broker has
logged that it started.
"""

from __future__ import annotations

from typing import Callable

import docker
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError, for_code

from pubsub_harness.containers import ManagedContainer
from pubsub_harness.context import BrokerEndpoint
from pubsub_harness.core.config import BrokerSettings
from pubsub_harness.core.exceptions import BrokerNotStartedError, BrokerStartupError
from pubsub_harness.core.logging import get_logger
from pubsub_harness.network import next_free_port

from .topics import topic_name


logger = get_logger("broker")

KAFKA_READY = r"Kafka Server started"
CONTAINER_PORT = 9092


def _kraft_environment(advertised: str) -> dict[str, str]:
    return {
        "KAFKA_NODE_ID": "1",
        "KAFKA_PROCESS_ROLES": "broker,controller",
        "KAFKA_LISTENERS": f"PLAINTEXT://:{CONTAINER_PORT},CONTROLLER://:9093",
        "KAFKA_ADVERTISED_LISTENERS": f"PLAINTEXT://{advertised}",
        "KAFKA_CONTROLLER_LISTENER_NAMES": "CONTROLLER",
        "KAFKA_LISTENER_SECURITY_PROTOCOL_MAP": "CONTROLLER:PLAINTEXT,PLAINTEXT:PLAINTEXT",
        "KAFKA_CONTROLLER_QUORUM_VOTERS": "1@localhost:9093",
        "KAFKA_OFFSETS_TOPIC_REPLICATION_FACTOR": "1",
        "KAFKA_TRANSACTION_STATE_LOG_REPLICATION_FACTOR": "1",
        "KAFKA_TRANSACTION_STATE_LOG_MIN_ISR": "1",
        "KAFKA_GROUP_INITIAL_REBALANCE_DELAY_MS": "0",
        "KAFKA_NUM_PARTITIONS": "1",
    }


class BrokerController:
    """Provision an embedded broker and the topics the service expects."""

    def __init__(
        self,
        settings: BrokerSettings,
        *,
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ):
        self.settings = settings
        self._docker_client_factory = docker_client_factory
        self._docker_client: docker.DockerClient | None = None
        self._container: ManagedContainer | None = None
        self._admin: AIOKafkaAdminClient | None = None
        self._endpoint: BrokerEndpoint | None = None

    @property
    def is_started(self) -> bool:
        return self._endpoint is not None

    def topic_name(self, event_type: str, tenant: str) -> str:
        return topic_name(event_type, tenant, prefix=self.settings.topic_prefix)

    async def start(self) -> BrokerEndpoint:
        """Start the broker; returns once it accepts admin connections."""
        port = next_free_port(self.settings.host)
        endpoint = BrokerEndpoint(self.settings.host, port)

        if self._docker_client is None:
            self._docker_client = self._docker_client_factory()

        self._container = ManagedContainer(
            self._docker_client,
            role="kafka",
            image=self.settings.image,
            ready_pattern=KAFKA_READY,
            environment=_kraft_environment(endpoint.address),
            ports={f"{CONTAINER_PORT}/tcp": port},
        )
        await self._container.start()

        admin = AIOKafkaAdminClient(
            bootstrap_servers=endpoint.address,
            request_timeout_ms=self.settings.request_timeout_ms,
        )
        try:
            await admin.start()
        except KafkaError as e:
            raise BrokerStartupError(
                f"Broker at {endpoint.address} refused admin connection: {e}",
                details={"address": endpoint.address},
            ) from e

        self._admin = admin
        self._endpoint = endpoint
        logger.info(f"Broker ready at {endpoint.address}")
        return endpoint

    def get_broker_address(self) -> str:
        """Advertised ``host:port``; only valid after ``start()``."""
        if self._endpoint is None:
            raise BrokerNotStartedError()
        return self._endpoint.address

    def _require_admin(self) -> AIOKafkaAdminClient:
        if self._admin is None:
            raise BrokerNotStartedError()
        return self._admin

    async def create_topic(self, name: str) -> bool:
        """Create ``name``. Returns False if it already existed."""
        admin = self._require_admin()
        new_topic = NewTopic(
            name=name,
            num_partitions=self.settings.partitions,
            replication_factor=self.settings.replication_factor,
        )

        try:
            response = await admin.create_topics([new_topic])
        except TopicAlreadyExistsError:
            logger.debug(f"Topic already exists: {name}")
            return False
        except KafkaError as e:
            raise BrokerStartupError(f"Failed to create topic {name}: {e}") from e

        for entry in getattr(response, "topic_errors", ()):
            code = entry[1]
            if code == TopicAlreadyExistsError.errno:
                logger.debug(f"Topic already exists: {name}")
                return False
            if code != 0:
                error = for_code(code)
                raise BrokerStartupError(
                    f"Failed to create topic {name}: {error.__name__}",
                    details={"topic": name, "error_code": code},
                )

        logger.info(f"Created topic: {name} (partitions={self.settings.partitions})")
        return True

    async def list_topics(self) -> list[str]:
        return sorted(await self._require_admin().list_topics())

    async def stop(self) -> None:
        """Close the admin client and remove the broker container."""
        admin, self._admin = self._admin, None
        container, self._container = self._container, None
        self._endpoint = None
        try:
            if admin is not None:
                await admin.close()
        finally:
            try:
                if container is not None:
                    await container.stop()
            finally:
                if self._docker_client is not None:
                    self._docker_client.close()
                    self._docker_client = None
        logger.info("Broker stopped")
