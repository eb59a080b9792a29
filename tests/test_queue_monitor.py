"""Tests for queue monitoring and the load governor."""

from unittest.mock import AsyncMock, Mock

import pytest

from digestion.services.queue_monitor import QueueMonitor


def make_monitor(depth: int, event_bus=None) -> tuple[QueueMonitor, Mock]:
    broker = Mock()
    broker.queue_depth = AsyncMock(return_value=depth)
    monitor = QueueMonitor(
        broker,
        event_bus,
        overload_threshold=100,
        pause_threshold=200,
        default_job_duration_seconds=20,
    )
    return monitor, broker


def test_estimated_wait_time():
    assert QueueMonitor.calculate_estimated_wait_time(30, 25, 3) == 250
    assert QueueMonitor.calculate_estimated_wait_time(1, 20, 3) == 20
    assert QueueMonitor.calculate_estimated_wait_time(4, 20, 3) == 40


def test_estimated_wait_time_empty_queue():
    assert QueueMonitor.calculate_estimated_wait_time(0, 25, 3) == 0


def test_estimated_wait_time_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        QueueMonitor.calculate_estimated_wait_time(5, 20, 0)


@pytest.mark.parametrize(
    ("depth", "overloaded", "paused"),
    [
        (100, False, False),
        (101, True, False),
        (150, True, False),
        (200, True, False),
        (201, True, True),
    ],
)
async def test_thresholds_are_independent(depth, overloaded, paused):
    monitor, _ = make_monitor(depth)

    assert await monitor.is_queue_overloaded() is overloaded
    assert await monitor.should_pause_job_creation() is paused


async def test_threshold_override():
    monitor, _ = make_monitor(50)

    assert await monitor.is_queue_overloaded(threshold=10) is True
    assert await monitor.should_pause_job_creation(threshold=49) is True


async def test_overload_event_emitted_on_crossing_only(event_bus):
    monitor, broker = make_monitor(150, event_bus)

    await monitor.is_queue_overloaded()
    await monitor.is_queue_overloaded()
    assert event_bus.topics() == ["queue.overloaded"]

    broker.queue_depth.return_value = 20
    assert await monitor.is_queue_overloaded() is False

    broker.queue_depth.return_value = 180
    await monitor.is_queue_overloaded()
    assert event_bus.topics() == ["queue.overloaded", "queue.overloaded"]

    payload = event_bus.payloads("queue.overloaded")[-1]
    assert payload["queueDepth"] == 180
    assert payload["threshold"] == 100
    assert payload["estimatedWaitSeconds"] == 60 * 20


async def test_snapshot():
    monitor, _ = make_monitor(9)

    snapshot = await monitor.snapshot(in_flight=3)

    assert snapshot.depth == 9
    assert snapshot.in_flight == 3
    assert snapshot.overloaded is False
    assert snapshot.paused is False
    assert snapshot.estimated_wait_seconds == 60


def test_average_duration_uses_samples():
    monitor, _ = make_monitor(0)
    assert monitor.average_job_duration_seconds() == 20

    monitor.record_job_processed(10_000)
    monitor.record_job_processed(30_000)

    assert monitor.average_job_duration_seconds() == 20
    assert monitor.estimate_wait_time(6) == 40


def test_stats_and_metrics():
    monitor, _ = make_monitor(0)
    monitor.record_job_processed(1000)
    monitor.record_job_processed(3000)
    monitor.record_job_processed(2000)
    monitor.record_job_failed(4000)
    monitor.record_job_retried()

    metrics = monitor.get_metrics()
    assert metrics["jobs_processed"] == 3
    assert metrics["jobs_failed"] == 1
    assert metrics["jobs_retried"] == 1
    assert metrics["avg_latency_ms"] == 2500

    stats = monitor.get_stats()
    assert stats["total_jobs"] == 4
    assert stats["success_rate"] == 0.75


async def test_prometheus_exposition():
    monitor, _ = make_monitor(42)
    monitor.record_job_processed(1500)
    monitor.record_job_failed()
    await monitor.get_queue_depth()

    text = monitor.render_prometheus().decode()

    assert "digestion_jobs_processed_total 1.0" in text
    assert "digestion_jobs_failed_total 1.0" in text
    assert "digestion_queue_depth 42.0" in text
    assert "digestion_job_duration_seconds_count 1.0" in text


def test_monitors_use_separate_registries():
    first, _ = make_monitor(0)
    second, _ = make_monitor(0)

    first.record_job_processed(100)

    assert first.get_metrics()["jobs_processed"] == 1
    assert second.get_metrics()["jobs_processed"] == 0
