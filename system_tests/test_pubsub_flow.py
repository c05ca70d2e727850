"""
End-to-end tests against the real harness environment.

The session shares one database, broker and deployed service; each test
starts with empty tables and a fresh stub server.
"""

from __future__ import annotations

import asyncio
import json
import os

import httpx
import pytest
from aiokafka import AIOKafkaConsumer

from pubsub_harness.controller import HarnessController
from pubsub_harness.database import DatabaseController
from pubsub_harness.services import ServiceState, Stub, StubServer


pytestmark = pytest.mark.asyncio(loop_scope="session")

EVENT_TYPE = "record_created"
CALLBACK = "/source-storage/handlers/created-record"


async def _declare(api_client: httpx.AsyncClient) -> None:
    response = await api_client.post(
        "/pubsub/event-types",
        json={"eventType": EVENT_TYPE, "description": "Created record"},
    )
    assert response.status_code == 201
    response = await api_client.post(
        "/pubsub/event-types/declare/subscriber",
        json={
            "moduleId": "mod-source-record-storage-1.0.0",
            "subscriptionDefinitions": [{"eventType": EVENT_TYPE, "callbackAddress": CALLBACK}],
        },
    )
    assert response.status_code == 201


class TestEnvironment:
    """Global setup results."""

    async def test_service_is_operational(self, harness: HarnessController, api_client: httpx.AsyncClient):
        """Service is up with the tenant registered exactly once."""
        assert harness.orchestrator.state is ServiceState.OPERATIONAL

        response = await api_client.get("/admin/health")

        assert response.status_code == 200
        assert response.json()["tenants"] == {"diku": 1}

    async def test_broker_endpoint_published(self, harness: HarnessController, harness_spec):
        """KAFKA_HOST and KAFKA_PORT point at the running broker."""
        broker = harness.context.broker
        assert os.environ["KAFKA_HOST"] == broker.host
        assert os.environ["KAFKA_PORT"] == str(broker.port)
        assert harness.broker.get_broker_address() == broker.address

    async def test_topics_exist(self, harness: HarnessController, harness_spec):
        """Configured topics were created for the tenant."""
        topics = await harness.broker.list_topics()
        assert f"pub-sub.diku.{EVENT_TYPE}" in topics


class TestPublishFlow:
    """Publishing through the service under test."""

    async def test_publish_is_audited_and_delivered(
        self,
        api_client: httpx.AsyncClient,
        stub_server: StubServer,
        harness_database: DatabaseController,
    ):
        """Event is recorded in tenant tables and delivered to the subscriber."""
        stub_server.stub_for(Stub(method="POST", path=CALLBACK, status=204))
        await _declare(api_client)

        response = await api_client.post(
            "/pubsub/publish",
            json={"eventType": EVENT_TYPE, "eventPayload": {"recordId": "r-1"}},
        )

        assert response.status_code == 204
        assert await harness_database.count_rows("audit_message", "diku") == 1
        assert await harness_database.count_rows("audit_message_payload", "diku") == 1

        delivered = stub_server.find_requests("POST", CALLBACK)
        assert len(delivered) == 1
        assert delivered[0].headers["x-okapi-tenant"] == "diku"
        assert delivered[0].json()["eventPayload"] == {"recordId": "r-1"}

    async def test_publish_reaches_topic(self, harness: HarnessController, api_client: httpx.AsyncClient):
        """Published event lands on the tenant's topic."""
        await _declare(api_client)
        consumer = AIOKafkaConsumer(
            f"pub-sub.diku.{EVENT_TYPE}",
            bootstrap_servers=harness.broker.get_broker_address(),
            auto_offset_reset="earliest",
            group_id=None,
        )
        await consumer.start()
        try:
            response = await api_client.post(
                "/pubsub/publish",
                json={"id": "evt-topic", "eventType": EVENT_TYPE, "eventPayload": {}},
            )
            assert response.status_code == 204

            async def first_match() -> dict:
                async for message in consumer:
                    value = json.loads(message.value)
                    if value["id"] == "evt-topic":
                        return value
                raise AssertionError("consumer stopped")

            value = await asyncio.wait_for(first_match(), timeout=30)
        finally:
            await consumer.stop()

        assert value["eventType"] == EVENT_TYPE

    async def test_unknown_event_type_rejected(self, api_client: httpx.AsyncClient):
        """Publishing an undeclared event type fails."""
        response = await api_client.post(
            "/pubsub/publish",
            json={"eventType": "never_declared", "eventPayload": {}},
        )
        assert response.status_code == 400


class TestStateIsolation:
    """Each test starts from empty tables and no stubs."""

    async def test_first_writes_state(self, api_client: httpx.AsyncClient, stub_server: StubServer):
        """Leave rows and a stub behind."""
        stub_server.stub_for(Stub(method="POST", path=CALLBACK, status=204))
        await _declare(api_client)
        response = await api_client.post("/pubsub/publish", json={"eventType": EVENT_TYPE})
        assert response.status_code == 204

    async def test_second_sees_clean_tables(
        self,
        api_client: httpx.AsyncClient,
        stub_server: StubServer,
        harness_database: DatabaseController,
    ):
        """Tables written by the previous test are empty again."""
        for table in ("messaging_module", "event_descriptor"):
            assert await harness_database.count_rows(table) == 0
        for table in ("audit_message", "audit_message_payload"):
            assert await harness_database.count_rows(table, "diku") == 0

        assert stub_server.stubs == []
        history = await api_client.get("/pubsub/history")
        assert history.json()["totalRecords"] == 0
