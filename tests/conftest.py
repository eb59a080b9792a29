"""Shared fixtures for the digestion queue tests."""

import os

# Required settings must exist before any digestion module loads its config
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("GOOGLE_AI_API_KEY", "test-google-key")
os.environ.setdefault("ENVIRONMENT", "development")

from typing import Any
from unittest.mock import AsyncMock

import fakeredis
import pytest

from digestion.queue.broker import RedisJobBroker
from digestion.queue.consumer import DigestionJobConsumer
from digestion.queue.models import (
    CaptureStatus,
    ContentType,
    DigestionResponse,
    DigestResult,
    ExtractedContent,
)
from digestion.queue.publisher import DigestionJobPublisher
from digestion.queue.topology import QueueTopology
from digestion.services.progress_tracker import ProgressTracker
from digestion.services.queue_monitor import QueueMonitor


class RecordingEventBus:
    """Event bus that keeps every published event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def payloads(self, topic: str) -> list[dict[str, Any]]:
        return [payload for t, payload in self.events if t == topic]


class FakeCaptureStore:
    """In-memory captures plus thought/idea storage."""

    def __init__(self) -> None:
        self.captures: dict[str, dict[str, Any]] = {}
        self.status_updates: list[tuple[str, CaptureStatus, dict[str, Any]]] = []
        self.digests: list[dict[str, Any]] = []

    def add_capture(
        self,
        capture_id: str,
        user_id: str = "user-1",
        capture_type: str = "text",
        status: str = "captured",
        **fields: Any,
    ) -> dict[str, Any]:
        capture = {
            "id": capture_id,
            "user_id": user_id,
            "capture_type": capture_type,
            "status": status,
            "raw_content": f"Note {capture_id}: call the plumber and plan the garden.",
            **fields,
        }
        self.captures[capture_id] = capture
        return capture

    async def get_capture(self, capture_id: str) -> dict[str, Any] | None:
        return self.captures.get(capture_id)

    async def update_status(
        self,
        capture_id: str,
        status: CaptureStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> None:
        self.status_updates.append((capture_id, status, extra_fields or {}))
        if capture_id in self.captures:
            self.captures[capture_id]["status"] = status.value
            self.captures[capture_id].update(extra_fields or {})

    def statuses_for(self, capture_id: str) -> list[CaptureStatus]:
        return [status for cid, status, _ in self.status_updates if cid == capture_id]

    async def create_with_items(
        self,
        capture_id: str,
        owner_id: str,
        summary: str,
        items: list[str],
        processing_time_ms: int,
        confidence_score: float | None,
    ) -> DigestResult:
        self.digests.append(
            {
                "capture_id": capture_id,
                "owner_id": owner_id,
                "summary": summary,
                "items": items,
                "processing_time_ms": processing_time_ms,
                "confidence_score": confidence_score,
            }
        )
        return DigestResult(thought_id=f"thought-{len(self.digests)}", item_count=len(items))


@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis(fake_server):
    client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def topology() -> QueueTopology:
    return QueueTopology()


@pytest.fixture
def broker(redis, topology) -> RedisJobBroker:
    return RedisJobBroker(redis, topology)


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def capture_store() -> FakeCaptureStore:
    return FakeCaptureStore()


@pytest.fixture
def publisher(broker, event_bus) -> DigestionJobPublisher:
    return DigestionJobPublisher(broker, event_bus)


@pytest.fixture
def progress_tracker() -> ProgressTracker:
    return ProgressTracker(retention_seconds=300)


@pytest.fixture
def monitor(broker, event_bus) -> QueueMonitor:
    return QueueMonitor(
        broker,
        event_bus,
        overload_threshold=100,
        pause_threshold=200,
        default_job_duration_seconds=20,
    )


@pytest.fixture
def extractor() -> AsyncMock:
    mock = AsyncMock()
    mock.extract_content.return_value = ExtractedContent(
        content="Call the plumber. Plan the garden.",
        content_type=ContentType.TEXT,
    )
    return mock


@pytest.fixture
def digestion_service() -> AsyncMock:
    mock = AsyncMock()
    mock.digest.return_value = DigestionResponse(
        summary="Household chores and garden plans.",
        ideas=["Call the plumber", "Plan the garden"],
        confidence="high",
    )
    return mock


@pytest.fixture
def make_consumer(
    broker, capture_store, extractor, digestion_service, event_bus, progress_tracker, monitor
):
    """Build a consumer wired to the fakes; keyword arguments override defaults."""

    def factory(**overrides: Any) -> DigestionJobConsumer:
        kwargs: dict[str, Any] = {
            "broker": broker,
            "content_repository": capture_store,
            "extractor": extractor,
            "digestion_service": digestion_service,
            "item_repository": capture_store,
            "event_bus": event_bus,
            "progress_tracker": progress_tracker,
            "monitor": monitor,
            "poll_interval": 0.01,
        }
        kwargs.update(overrides)
        return DigestionJobConsumer(**kwargs)

    return factory
