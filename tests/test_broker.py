"""Tests for the Redis job broker and queue topology."""

import time

import fakeredis
import pytest

from digestion.errors import TopologyMismatchError
from digestion.queue.broker import RedisJobBroker
from digestion.queue.models import ContentType, DigestionJob, JobPriority
from digestion.queue.topology import QueueTopology


def make_job(content_id: str, priority: JobPriority = JobPriority.NORMAL, **fields) -> DigestionJob:
    return DigestionJob(
        content_id=content_id,
        owner_id="user-1",
        content_type=ContentType.TEXT,
        priority=priority,
        **fields,
    )


async def drain(broker: RedisJobBroker) -> list[str]:
    delivered = []
    while (delivery := await broker.fetch()) is not None:
        delivered.append(delivery.job.content_id)
        await broker.ack(delivery)
    return delivered


async def test_high_priority_first_then_fifo(broker):
    await broker.publish(make_job("A"))
    await broker.publish(make_job("B"))
    await broker.publish(make_job("C", JobPriority.HIGH))
    await broker.publish(make_job("D"))

    assert await drain(broker) == ["C", "A", "B", "D"]


async def test_fetch_empty_queue(broker):
    assert await broker.fetch() is None


async def test_delivered_message_counts_toward_depth_until_acked(broker):
    await broker.publish(make_job("A"))
    await broker.publish(make_job("B"))

    delivery = await broker.fetch()
    assert await broker.queue_depth() == 2
    assert await broker.stats() == {"ready": 1, "unacked": 1, "retrying": 0, "failed": 0}

    await broker.ack(delivery)
    assert await broker.queue_depth() == 1


async def test_message_preserves_job_fields(broker):
    job = make_job("A", JobPriority.HIGH, retry_count=2)
    receipt = await broker.publish(job)

    delivery = await broker.fetch()

    assert delivery.message_id == receipt.message_id
    assert delivery.job == job


async def test_requeue_restores_position(broker):
    await broker.publish(make_job("A"))
    await broker.publish(make_job("B"))

    delivery = await broker.fetch()
    await broker.requeue(delivery)

    assert await drain(broker) == ["A", "B"]


async def test_reject_schedules_retry_with_incremented_count(broker):
    await broker.publish(make_job("A"))
    delivery = await broker.fetch()

    retried = await broker.reject(delivery, delay_seconds=5)

    assert retried.retry_count == 1
    assert await broker.fetch() is None
    assert await broker.stats() == {"ready": 0, "unacked": 0, "retrying": 1, "failed": 0}

    assert await broker.promote_due_retries(now=time.time() + 6) == 1
    redelivered = await broker.fetch()
    assert redelivered.job.content_id == "A"
    assert redelivered.job.retry_count == 1


async def test_retry_not_promoted_before_delay(broker):
    await broker.publish(make_job("A"))
    await broker.reject(await broker.fetch(), delay_seconds=5)

    assert await broker.promote_due_retries(now=time.time() + 1) == 0


async def test_promotion_is_idempotent(broker):
    await broker.publish(make_job("A"))
    await broker.reject(await broker.fetch(), delay_seconds=0)
    later = time.time() + 1

    assert await broker.promote_due_retries(now=later) == 1
    assert await broker.promote_due_retries(now=later) == 0
    assert await drain(broker) == ["A"]


async def test_promoted_retry_goes_behind_its_priority_tier(broker):
    await broker.publish(make_job("A"))
    await broker.reject(await broker.fetch(), delay_seconds=0)
    await broker.publish(make_job("B"))
    await broker.publish(make_job("C", JobPriority.HIGH))

    await broker.promote_due_retries(now=time.time() + 1)

    assert await drain(broker) == ["C", "B", "A"]


async def test_dead_letter_keeps_failure_record(broker):
    await broker.publish(make_job("A", retry_count=3))
    delivery = await broker.fetch()

    await broker.dead_letter(delivery, "AI service unavailable")

    failed = await broker.failed_jobs()
    assert len(failed) == 1
    assert failed[0]["messageId"] == delivery.message_id
    assert failed[0]["job"]["contentId"] == "A"
    assert failed[0]["job"]["retryCount"] == 3
    assert failed[0]["reason"] == "AI service unavailable"
    assert await broker.queue_depth() == 0


async def test_failed_jobs_newest_first(broker):
    for content_id in ("A", "B", "C"):
        await broker.publish(make_job(content_id))
        await broker.dead_letter(await broker.fetch(), "boom")

    failed = await broker.failed_jobs(limit=2)

    assert [entry["job"]["contentId"] for entry in failed] == ["C", "B"]


async def test_recover_stale_deliveries(broker):
    await broker.publish(make_job("A"))
    await broker.publish(make_job("B"))
    await broker.fetch()

    assert await broker.recover_stale_deliveries(max_age_seconds=3600) == 0
    assert await broker.recover_stale_deliveries(max_age_seconds=0) == 1
    assert await drain(broker) == ["A", "B"]


async def test_queue_entry_without_body_is_dropped(broker, redis, topology):
    await redis.zadd(topology.queue_key, {"orphan": 0})
    await broker.publish(make_job("A"))

    delivery = await broker.fetch()

    assert delivery.job.content_id == "A"
    assert await redis.hlen(topology.unacked_key) == 1


async def test_messages_survive_broker_restart(fake_server, topology):
    first = RedisJobBroker(
        fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True), topology
    )
    for i in range(10):
        await first.publish(make_job(f"cap-{i}"))
    await first.redis.aclose()

    second = RedisJobBroker(
        fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True), topology
    )
    try:
        assert await drain(second) == [f"cap-{i}" for i in range(10)]
    finally:
        await second.redis.aclose()


async def test_declare_topology_is_repeatable(broker, redis, topology):
    first = await broker.declare()
    second = await broker.declare()

    assert first == second
    stored = await redis.hgetall(topology.topology_key)
    assert stored["max_priority"] == "10"
    assert stored["retry_delays"] == "5,15,45"


async def test_declare_topology_rejects_conflict(redis):
    await RedisJobBroker(redis, QueueTopology(max_priority=10)).declare()

    with pytest.raises(TopologyMismatchError) as exc_info:
        await RedisJobBroker(redis, QueueTopology(max_priority=5)).declare()

    assert exc_info.value.field == "max_priority"
    assert exc_info.value.existing == "10"
    assert exc_info.value.declared == "5"


def test_topology_rejects_invalid_priority_range():
    with pytest.raises(ValueError):
        QueueTopology(max_priority=0)


def test_priority_bands_order_scores():
    topology = QueueTopology()

    high = topology.score_for(topology.priority_value(JobPriority.HIGH), 500)
    normal = topology.score_for(topology.priority_value(JobPriority.NORMAL), 1)

    assert high < normal
