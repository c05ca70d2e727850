"""
Sample publish/subscribe service used as the system under test.

A deliberately small stand-in for a real pub/sub module:
- module tables (``pubsub_config``) are created at startup,
- tenant tables (``<tenant>_mod_pubsub``) are created by ``POST /_/tenant``,
- published events are audited, sent to ``pub-sub.<tenant>.<event_type>``
  and delivered to subscriber callbacks through the ``X-Okapi-Url`` gateway.

The harness builds it through ``create_app(context)``.
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg
import httpx
from aiokafka import AIOKafkaProducer
from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from pubsub_harness.broker.topics import topic_name
from pubsub_harness.context import ServiceContext
from pubsub_harness.core.logging import get_logger
from pubsub_harness.database.connection import quote_ident


logger = get_logger("sample_service")

MODULE_SCHEMA = "pubsub_config"
SCHEMA_SUFFIX = "mod_pubsub"

MODULE_DDL = f"""
CREATE SCHEMA IF NOT EXISTS {MODULE_SCHEMA};
CREATE TABLE IF NOT EXISTS {MODULE_SCHEMA}.event_descriptor (
    id TEXT PRIMARY KEY,
    descriptor JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS {MODULE_SCHEMA}.messaging_module (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    module_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    role TEXT NOT NULL,
    subscriber_callback TEXT
);
"""

TENANT_DDL = """
CREATE SCHEMA IF NOT EXISTS {schema};
CREATE TABLE IF NOT EXISTS {schema}.audit_message (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    state TEXT NOT NULL,
    created_date TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS {schema}.audit_message_payload (
    event_id TEXT PRIMARY KEY,
    content JSONB NOT NULL
);
"""


# =============================================================================
# Request bodies
# =============================================================================


class EventDescriptor(BaseModel):
    event_type: str = Field(alias="eventType")
    description: str = ""
    ttl_minutes: int = Field(default=1, alias="eventTTL")


class SubscriptionDefinition(BaseModel):
    event_type: str = Field(alias="eventType")
    callback_address: str = Field(alias="callbackAddress")


class SubscriberDeclaration(BaseModel):
    module_id: str = Field(alias="moduleId")
    subscription_definitions: list[SubscriptionDefinition] = Field(alias="subscriptionDefinitions")


class Event(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = Field(alias="eventType")
    event_payload: Any = Field(default=None, alias="eventPayload")


def _tenant_schema(tenant: str) -> str:
    return quote_ident(f"{tenant}_{SCHEMA_SUFFIX}".lower())


# =============================================================================
# Application
# =============================================================================


def create_app(context: ServiceContext) -> FastAPI:
    """Build the service wired to the harness database and broker."""
    state: dict[str, Any] = {"tenant_registrations": {}}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        pool = await asyncpg.create_pool(dsn=context.database.dsn, min_size=1, max_size=4)
        async with pool.acquire() as conn:
            await conn.execute(MODULE_DDL)

        producer = AIOKafkaProducer(
            bootstrap_servers=context.broker.address,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        )
        await producer.start()

        state["pool"] = pool
        state["producer"] = producer
        logger.info(f"{context.module_id} started on port {context.http_port}")
        try:
            yield
        finally:
            await producer.stop()
            await pool.close()

    app = FastAPI(title=context.module_id, lifespan=lifespan)

    @app.post("/_/tenant", status_code=status.HTTP_201_CREATED)
    async def post_tenant(
        request: Request,
        x_okapi_tenant: str = Header(...),
    ) -> dict[str, str]:
        body = await request.json()
        if body.get("module_to") != context.module_id:
            raise HTTPException(status_code=400, detail=f"Unknown module {body.get('module_to')}")

        async with state["pool"].acquire() as conn:
            await conn.execute(TENANT_DDL.format(schema=_tenant_schema(x_okapi_tenant)))

        registrations = state["tenant_registrations"]
        registrations[x_okapi_tenant] = registrations.get(x_okapi_tenant, 0) + 1
        return {"tenant": x_okapi_tenant, "module": context.module_id}

    @app.get("/admin/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "tenants": state["tenant_registrations"]}

    @app.post("/pubsub/event-types", status_code=status.HTTP_201_CREATED)
    async def create_event_type(descriptor: EventDescriptor) -> dict[str, str]:
        async with state["pool"].acquire() as conn:
            await conn.execute(
                f"INSERT INTO {MODULE_SCHEMA}.event_descriptor (id, descriptor) VALUES ($1, $2) "
                "ON CONFLICT (id) DO UPDATE SET descriptor = EXCLUDED.descriptor",
                descriptor.event_type,
                descriptor.model_dump_json(by_alias=True),
            )
        return {"eventType": descriptor.event_type}

    @app.post("/pubsub/event-types/declare/subscriber", status_code=status.HTTP_201_CREATED)
    async def declare_subscriber(
        declaration: SubscriberDeclaration,
        x_okapi_tenant: str = Header(...),
    ) -> Response:
        async with state["pool"].acquire() as conn:
            for definition in declaration.subscription_definitions:
                await conn.execute(
                    f"INSERT INTO {MODULE_SCHEMA}.messaging_module "
                    "(id, event_type, module_id, tenant_id, role, subscriber_callback) "
                    "VALUES ($1, $2, $3, $4, 'SUBSCRIBER', $5)",
                    str(uuid.uuid4()),
                    definition.event_type,
                    declaration.module_id,
                    x_okapi_tenant,
                    definition.callback_address,
                )
        return Response(status_code=status.HTTP_201_CREATED)

    @app.post("/pubsub/publish", status_code=status.HTTP_204_NO_CONTENT)
    async def publish(
        event: Event,
        x_okapi_tenant: str = Header(...),
        x_okapi_token: str = Header(...),
        x_okapi_url: str = Header(...),
    ) -> Response:
        schema = _tenant_schema(x_okapi_tenant)
        async with state["pool"].acquire() as conn:
            known = await conn.fetchval(
                f"SELECT 1 FROM {MODULE_SCHEMA}.event_descriptor WHERE id = $1",
                event.event_type,
            )
            if not known:
                raise HTTPException(status_code=400, detail=f"Event type {event.event_type} does not exist")

            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO {schema}.audit_message (id, event_id, event_type, state) "
                    "VALUES ($1, $2, $3, 'PUBLISHED')",
                    str(uuid.uuid4()),
                    event.id,
                    event.event_type,
                )
                await conn.execute(
                    f"INSERT INTO {schema}.audit_message_payload (event_id, content) VALUES ($1, $2) "
                    "ON CONFLICT (event_id) DO NOTHING",
                    event.id,
                    json.dumps(event.event_payload),
                )

            callbacks = await conn.fetch(
                f"SELECT subscriber_callback FROM {MODULE_SCHEMA}.messaging_module "
                "WHERE event_type = $1 AND tenant_id = $2 AND role = 'SUBSCRIBER'",
                event.event_type,
                x_okapi_tenant,
            )

        await state["producer"].send_and_wait(
            topic_name(event.event_type, x_okapi_tenant),
            event.model_dump(by_alias=True),
            key=event.id.encode("utf-8"),
        )

        headers = {
            "X-Okapi-Tenant": x_okapi_tenant,
            "X-Okapi-Token": x_okapi_token,
        }
        async with httpx.AsyncClient(base_url=x_okapi_url, timeout=10.0) as client:
            for row in callbacks:
                response = await client.post(
                    row["subscriber_callback"],
                    json=event.model_dump(by_alias=True),
                    headers=headers,
                )
                if not response.is_success:
                    logger.warning(
                        f"Delivery of {event.id} to {row['subscriber_callback']} "
                        f"failed with {response.status_code}"
                    )

        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/pubsub/history")
    async def history(x_okapi_tenant: str = Header(...)) -> dict[str, Any]:
        schema = _tenant_schema(x_okapi_tenant)
        async with state["pool"].acquire() as conn:
            rows = await conn.fetch(
                f"SELECT event_id, event_type, state FROM {schema}.audit_message ORDER BY created_date"
            )
        messages = [
            {"eventId": r["event_id"], "eventType": r["event_type"], "state": r["state"]}
            for r in rows
        ]
        return {"auditMessages": messages, "totalRecords": len(messages)}

    return app
