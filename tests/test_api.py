"""Tests for the digestion HTTP API."""

import json
from unittest.mock import AsyncMock, Mock

import fakeredis
import pytest
from fastapi.testclient import TestClient

from digestion.api.app import create_app
from digestion.api.dependencies import (
    BrokerDep,
    EventBusDep,
    get_queue_monitor,
    get_redis,
    get_supabase,
)
from digestion.queue.topology import QueueTopology
from digestion.services.queue_monitor import QueueMonitor


@pytest.fixture
def store(capture_store):
    return capture_store


@pytest.fixture
def inspect(fake_server) -> fakeredis.FakeRedis:
    """Synchronous view of the same Redis data the app writes."""
    return fakeredis.FakeRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def app(fake_server, store):
    app = create_app()

    async def fake_redis():
        client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
        try:
            yield client
        finally:
            await client.aclose()

    async def fake_supabase():
        return store

    app.dependency_overrides[get_redis] = fake_redis
    app.dependency_overrides[get_supabase] = fake_supabase
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def queued_messages(inspect: fakeredis.FakeRedis) -> list[dict]:
    topology = QueueTopology.from_config()
    message_ids = inspect.zrange(topology.queue_key, 0, -1)
    return [
        json.loads(json.loads(inspect.hget(topology.messages_key, message_id))["body"])
        for message_id in message_ids
    ]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_readiness_with_reachable_redis(client):
    response = client.get("/health/ready")

    assert response.status_code == 200
    assert response.json()["services"]["redis"]["status"] == "healthy"


def test_readiness_with_unreachable_redis(app):
    broken = Mock()
    broken.ping = AsyncMock(side_effect=ConnectionError("refused"))

    async def broken_redis():
        return broken

    app.dependency_overrides[get_redis] = broken_redis
    with TestClient(app) as client:
        response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_submit_capture(client, store, inspect):
    store.add_capture("cap-1")

    response = client.post("/api/digestion/cap-1")

    assert response.status_code == 202
    body = response.json()
    assert body["capture_id"] == "cap-1"
    assert body["priority"] == "normal"
    assert body["status"] == "queued"
    assert [m["contentId"] for m in queued_messages(inspect)] == ["cap-1"]


def test_user_initiated_submit_is_high_priority(client, store, inspect):
    store.add_capture("cap-1")
    store.add_capture("cap-2")

    client.post("/api/digestion/cap-1")
    response = client.post("/api/digestion/cap-2", json={"user_initiated": True})

    assert response.json()["priority"] == "high"
    assert [m["contentId"] for m in queued_messages(inspect)] == ["cap-2", "cap-1"]


def test_submit_unknown_capture(client):
    response = client.post("/api/digestion/missing")

    assert response.status_code == 404
    assert response.json()["code"] == "CaptureNotFound"


def test_batch_submit(client, store, inspect):
    for capture_id in ("cap-1", "cap-2", "cap-4", "cap-5"):
        store.add_capture(capture_id)

    response = client.post(
        "/api/digestion/batch",
        json={"capture_ids": ["cap-1", "cap-2", "cap-3", "cap-4", "cap-5"]},
    )

    assert response.status_code == 200
    body = response.json()
    assert [item["capture_id"] for item in body["success"]] == ["cap-1", "cap-2", "cap-4", "cap-5"]
    assert body["errors"] == [
        {
            "capture_id": "cap-3",
            "error": "CaptureNotFound",
            "message": "Capture cap-3 not found",
        }
    ]
    assert len(queued_messages(inspect)) == 4


def test_batch_submit_rejects_empty_list(client):
    response = client.post("/api/digestion/batch", json={"capture_ids": []})

    assert response.status_code == 422


def test_retry_failed_capture(client, store, inspect):
    store.add_capture("cap-1", status="digestion_failed")

    response = client.post("/api/digestion/cap-1/retry")

    assert response.status_code == 202
    assert response.json()["priority"] == "high"
    messages = queued_messages(inspect)
    assert messages[0]["contentId"] == "cap-1"
    assert messages[0]["retryCount"] == 0


def test_retry_requires_failed_capture(client, store):
    store.add_capture("cap-1", status="digested")

    response = client.post("/api/digestion/cap-1/retry")

    assert response.status_code == 409
    assert response.json()["code"] == "InvalidCaptureState"


def test_paused_submission_returns_503(app, store):
    async def paused_monitor(broker: BrokerDep, event_bus: EventBusDep) -> QueueMonitor:
        return QueueMonitor(broker, event_bus, overload_threshold=0, pause_threshold=0)

    app.dependency_overrides[get_queue_monitor] = paused_monitor
    store.add_capture("cap-1")
    store.add_capture("cap-2")

    with TestClient(app) as client:
        assert client.post("/api/digestion/cap-1").status_code == 202
        response = client.post("/api/digestion/cap-2")

    assert response.status_code == 503
    assert response.json()["code"] == "JobCreationPaused"
    assert "Retry-After" in response.headers


def test_queue_status(client, store):
    for capture_id in ("cap-1", "cap-2"):
        store.add_capture(capture_id)
        client.post(f"/api/digestion/{capture_id}")

    response = client.get("/api/digestion/queue")

    assert response.status_code == 200
    body = response.json()
    assert body["depth"] == 2
    assert body["ready"] == 2
    assert body["overloaded"] is False
    assert body["paused"] is False
    assert body["failed"] == 0


def test_failed_jobs(client, inspect):
    topology = QueueTopology.from_config()
    inspect.lpush(
        topology.failed_key,
        json.dumps({"messageId": "m1", "job": {"contentId": "cap-1"}, "reason": "boom"}),
    )

    response = client.get("/api/digestion/failed", params={"limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["jobs"][0]["reason"] == "boom"
