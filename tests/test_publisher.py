"""Tests for the digestion job publisher."""

from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from digestion.errors import BrokerUnreachableError
from digestion.queue.models import ContentType, JobPriority
from digestion.queue.publisher import DigestionJobPublisher, PublishRequest


async def test_publish_enqueues_and_emits_event(publisher, broker, event_bus):
    enqueued = await publisher.publish("cap-1", "user-1", ContentType.TEXT)

    assert enqueued.job.content_id == "cap-1"
    assert enqueued.job.priority is JobPriority.NORMAL
    assert enqueued.job.retry_count == 0
    assert await broker.queue_depth() == 1

    assert event_bus.topics() == ["job.queued"]
    payload = event_bus.payloads("job.queued")[0]
    assert payload["contentId"] == "cap-1"
    assert payload["ownerId"] == "user-1"
    assert payload["priority"] == "normal"
    assert payload["queuedAt"] == enqueued.job.queued_at.isoformat()


async def test_published_message_uses_camel_case_keys(publisher, redis, topology):
    enqueued = await publisher.publish(
        "cap-1", "user-1", ContentType.AUDIO_TRANSCRIBED, JobPriority.HIGH
    )

    payload = enqueued.job.to_payload()

    assert payload["contentId"] == "cap-1"
    assert payload["ownerId"] == "user-1"
    assert payload["contentType"] == "audio_transcribed"
    assert payload["priority"] == "high"
    assert payload["retryCount"] == 0
    assert await redis.hexists(topology.messages_key, enqueued.message_id)


async def test_high_priority_jumps_queue(publisher, broker):
    await publisher.publish("cap-1", "user-1", ContentType.TEXT)
    await publisher.publish("cap-2", "user-1", ContentType.TEXT, JobPriority.HIGH)

    delivery = await broker.fetch()

    assert delivery.job.content_id == "cap-2"


async def test_unreachable_broker_raises_without_event(event_bus):
    broker = Mock()
    broker.publish = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    publisher = DigestionJobPublisher(broker, event_bus)

    with pytest.raises(BrokerUnreachableError) as exc_info:
        await publisher.publish("cap-1", "user-1", ContentType.TEXT)

    assert exc_info.value.code == "BrokerUnreachable"
    assert event_bus.events == []


async def test_batch_continues_past_failures(broker, event_bus):
    real_publish = broker.publish
    calls = 0

    async def flaky_publish(job):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise RedisConnectionError("connection reset")
        return await real_publish(job)

    broker.publish = flaky_publish
    publisher = DigestionJobPublisher(broker, event_bus)

    result = await publisher.publish_batch(
        [PublishRequest(f"cap-{i}", "user-1", ContentType.TEXT) for i in range(3)]
    )

    assert [e.job.content_id for e in result.success] == ["cap-0", "cap-2"]
    assert result.errors == [
        {
            "content_id": "cap-1",
            "error": "BrokerUnreachable",
            "message": result.errors[0]["message"],
        }
    ]
    assert len(event_bus.payloads("job.queued")) == 2
