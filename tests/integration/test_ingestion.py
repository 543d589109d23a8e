import asyncio
from datetime import timedelta

import duckdb
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import KEY_A, KEY_B, TENANT_A, make_event
from eventpulse.core.config import Settings
from eventpulse.core.container import assemble
from eventpulse.core.errors import ExecutionError
from eventpulse.core.timeutil import utcnow
from eventpulse.services.event_store import EventStore
from eventpulse.services.realtime import project_topic

EVENTS_URL = "/api/v1/events"


async def count_rows(store, tenant_id=TENANT_A.tenant_id) -> int:
    rows = await store.query("SELECT COUNT(*) AS n FROM events WHERE tenant_id = $tenant_id", {"tenant_id": tenant_id})
    return rows[0]["n"]


def batch_of(count, start=None):
    start = start or utcnow() - timedelta(minutes=30)
    return {
        "events": [
            {
                "event_name": "page_view",
                "user_id": f"user_{i % 7}",
                "session_id": f"session_{i % 3}",
                "timestamp": (start + timedelta(seconds=i)).isoformat(),
                "properties": {"page": f"/p/{i}", "index": i}
            }
            for i in range(count)
        ]
    }


@pytest.mark.asyncio
async def test_single_event_is_stored_and_acknowledged(client, store):
    """Test single event ingestion"""
    response = await client.post(
        EVENTS_URL,
        json={"event_name": "signup", "user_id": "u1", "properties": {"plan": "pro"}},
        headers={"X-API-Key": KEY_A, "X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "pytest"}
    )

    assert response.status_code == 201
    data = response.json()
    assert data["accepted"] == 1
    assert data["message"] == "Accepted 1 event"
    assert len(data["event_ids"]) == 1

    [stored] = await store.recent(TENANT_A.tenant_id, 10)
    assert stored.id == data["event_ids"][0]
    assert stored.ip == "203.0.113.7"
    assert stored.user_agent == "pytest"
    assert stored.properties == {"plan": "pro"}


@pytest.mark.asyncio
async def test_missing_user_defaults_to_anonymous_session(client, store):
    await client.post(EVENTS_URL, json={"event_name": "a", "session_id": "s9"}, headers={"X-API-Key": KEY_A})
    await client.post(EVENTS_URL, json={"event_name": "b"}, headers={"X-API-Key": KEY_A})

    users = {event.event_name: event.user_id for event in await store.recent(TENANT_A.tenant_id, 10)}
    assert users == {"a": "anonymous_s9", "b": "anonymous"}


@pytest.mark.asyncio
async def test_batch_is_all_or_nothing(client, store):
    """One invalid event rejects the whole batch and nothing is written"""
    payload = batch_of(5)
    payload["events"][2]["event_name"] = ""

    response = await client.post(f"{EVENTS_URL}/batch", json=payload, headers={"X-API-Key": KEY_A})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["kind"] == "client_input_error"
    assert error["field"] == "events.2.event_name"
    assert await count_rows(store) == 0


@pytest.mark.asyncio
async def test_nested_property_rejected(client, store):
    response = await client.post(
        EVENTS_URL,
        json={"event_name": "a", "properties": {"cart": {"items": 2}}},
        headers={"X-API-Key": KEY_A}
    )
    assert response.status_code == 400
    assert response.json()["error"]["field"].startswith("properties.cart")
    assert await count_rows(store) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "ak_unknown"}])
async def test_unauthenticated_ingestion_rejected(client, store, headers):
    response = await client.post(f"{EVENTS_URL}/batch", json=batch_of(2), headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "authentication_error"
    assert await count_rows(store) == 0


@pytest.mark.asyncio
async def test_recent_events_bounded_and_newest_first(client):
    headers = {"X-API-Key": KEY_A}
    start = utcnow() - timedelta(hours=1)
    assert (await client.post(f"{EVENTS_URL}/batch", json=batch_of(100, start), headers=headers)).status_code == 201
    assert (await client.post(f"{EVENTS_URL}/batch", json=batch_of(20, start + timedelta(minutes=5)), headers=headers)).status_code == 201

    response = await client.get(f"{EVENTS_URL}/recent", params={"limit": 100}, headers=headers)

    data = response.json()
    assert data["source"] == "cache"
    assert data["count"] == 100
    timestamps = [event["timestamp"] for event in data["events"]]
    assert timestamps == sorted(timestamps, reverse=True)

    too_many = await client.get(f"{EVENTS_URL}/recent", params={"limit": 101}, headers=headers)
    assert too_many.status_code == 400


@pytest.mark.asyncio
async def test_recent_falls_back_to_store_when_cache_empty(client, store):
    now = utcnow()
    await store.append([
        make_event(event_name="older", timestamp=now - timedelta(minutes=2)),
        make_event(event_name="newer", timestamp=now - timedelta(minutes=1)),
    ])

    response = await client.get(f"{EVENTS_URL}/recent", headers={"X-API-Key": KEY_A})

    data = response.json()
    assert data["source"] == "database"
    assert [event["event_name"] for event in data["events"]] == ["newer", "older"]


@pytest.mark.asyncio
async def test_recent_events_scoped_to_tenant(client):
    await client.post(EVENTS_URL, json={"event_name": "private"}, headers={"X-API-Key": KEY_A})

    response = await client.get(f"{EVENTS_URL}/recent", headers={"X-API-Key": KEY_B})

    assert response.status_code == 200
    assert response.json()["events"] == []


@pytest.mark.asyncio
async def test_fan_out_after_durable_write(client, services):
    received = []

    async def send(message):
        received.append(message)

    services.hub.connect("watcher", TENANT_A.tenant_id, send)
    services.hub.subscribe("watcher", project_topic(TENANT_A.tenant_id))
    try:
        response = await client.post(f"{EVENTS_URL}/batch", json=batch_of(3), headers={"X-API-Key": KEY_A})
        assert response.status_code == 201
        await asyncio.sleep(0.05)

        assert [m["type"] for m in received] == ["new_event"] * 3 + ["metric_update"]
        assert received[-1]["value"] == 3
    finally:
        services.hub.disconnect("watcher")


class FailingStore(EventStore):
    async def append(self, events):
        raise ExecutionError("Event store operation failed: disk full")


@pytest_asyncio.fixture
async def failing_client(app, settings, tenants, generator, history):
    store = FailingStore(duckdb.connect(":memory:"))
    services = assemble(settings, store=store, tenants=tenants, generator=generator, history=history)
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, services
    store.close()


@pytest.mark.asyncio
async def test_failed_write_skips_cache_and_fan_out(failing_client):
    client, services = failing_client
    received = []

    async def send(message):
        received.append(message)

    subscriber = services.hub.connect("watcher", TENANT_A.tenant_id, send)
    services.hub.subscribe("watcher", project_topic(TENANT_A.tenant_id))
    try:
        response = await client.post(f"{EVENTS_URL}/batch", json=batch_of(3), headers={"X-API-Key": KEY_A})

        assert response.status_code == 503
        assert response.json()["error"]["kind"] == "execution_error"
        assert await services.recent_cache.get_range(TENANT_A.tenant_id, 10) == []
        assert subscriber.queue.qsize() == 0
        assert received == []
    finally:
        services.hub.disconnect("watcher")


@pytest_asyncio.fixture
async def limited_client(app, store, tenants, generator, history):
    settings = Settings(_env_file=None, redis_url="", event_rate_limit=5, rate_limit_period=60)
    app.state.services = assemble(settings, store=store, tenants=tenants, generator=generator, history=history)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_rate_limit_counts_events_not_requests(limited_client, store):
    headers = {"X-API-Key": KEY_A}

    first = await limited_client.post(f"{EVENTS_URL}/batch", json=batch_of(5), headers=headers)
    second = await limited_client.post(EVENTS_URL, json={"event_name": "one_more"}, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 429
    assert second.headers["Retry-After"] == "60"
    body = second.json()["error"]
    assert body["kind"] == "rate_limited"
    assert body["retry_after"] == 60
    assert await count_rows(store) == 5

    # Budgets are per credential
    other = await limited_client.post(EVENTS_URL, json={"event_name": "x"}, headers={"X-API-Key": KEY_B})
    assert other.status_code == 201


@pytest.mark.asyncio
async def test_validate_endpoint_does_not_store(client, store):
    response = await client.post(f"{EVENTS_URL}/validate", json={"event_name": "  trimmed  "})

    assert response.status_code == 200
    assert response.json()["sanitized_event"]["event_name"] == "trimmed"
    assert await count_rows(store) == 0

    invalid = await client.post(f"{EVENTS_URL}/validate", json={"event_name": "x" * 101})
    assert invalid.status_code == 400
    assert invalid.json()["error"]["field"] == "event_name"


@pytest.mark.asyncio
async def test_schema_endpoint(client):
    response = await client.get(f"{EVENTS_URL}/schema")
    assert response.status_code == 200
    assert response.json()["event_schema"]["batch"]["max_items"] == 100
