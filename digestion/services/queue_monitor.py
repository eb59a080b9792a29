"""
Queue Monitoring and Load Governor

Observes queue depth and job latency, decides when the queue is overloaded
(warn) and when job creation must pause (refuse), and exports Prometheus
metrics. The two thresholds are independent.
"""

import math
from collections import deque
from datetime import UTC, datetime
from typing import Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from digestion.config import config
from digestion.events import QueueOverloaded
from digestion.queue.broker import RedisJobBroker
from digestion.queue.models import QueueSnapshot
from digestion.queue.topology import PREFETCH_COUNT
from digestion.services.interfaces import EventBus
from digestion.utils.logger import get_logger

logger = get_logger(__name__)

# Latency samples kept for the rolling average
MAX_LATENCY_SAMPLES = 100


class QueueMonitor:
    """Queue load governor and metrics collector."""

    def __init__(
        self,
        broker: RedisJobBroker,
        event_bus: EventBus | None = None,
        overload_threshold: int | None = None,
        pause_threshold: int | None = None,
        default_job_duration_seconds: float | None = None,
        concurrency: int = PREFETCH_COUNT,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._broker = broker
        self._events = event_bus
        self.overload_threshold = (
            config.overload_threshold if overload_threshold is None else overload_threshold
        )
        self.pause_threshold = (
            config.pause_threshold if pause_threshold is None else pause_threshold
        )
        self.default_job_duration_seconds = (
            default_job_duration_seconds or config.default_job_duration_seconds
        )
        self.concurrency = concurrency

        self._latencies_ms: deque[float] = deque(maxlen=MAX_LATENCY_SAMPLES)
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._jobs_retried = 0
        self._last_depth = 0
        self._overloaded = False

        self.registry = registry or CollectorRegistry()
        self._processed_counter = Counter(
            "digestion_jobs_processed_total",
            "Total number of digestion jobs processed",
            registry=self.registry,
        )
        self._failed_counter = Counter(
            "digestion_jobs_failed_total",
            "Total number of digestion jobs failed terminally",
            registry=self.registry,
        )
        self._retried_counter = Counter(
            "digestion_jobs_retried_total",
            "Total number of digestion jobs sent for retry",
            registry=self.registry,
        )
        self._duration_histogram = Histogram(
            "digestion_job_duration_seconds",
            "Digestion job processing time in seconds",
            buckets=(1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0),
            registry=self.registry,
        )
        self._depth_gauge = Gauge(
            "digestion_queue_depth",
            "Current number of jobs in queue (ready + unacknowledged)",
            registry=self.registry,
        )
        self._in_flight_gauge = Gauge(
            "digestion_jobs_in_flight",
            "Jobs currently being processed by this worker",
            registry=self.registry,
        )

    # ----- Recording -----

    def record_job_processed(self, duration_ms: float) -> None:
        """Count a successful job and sample its latency."""
        self._jobs_processed += 1
        self._processed_counter.inc()
        self.record_job_latency(duration_ms)

    def record_job_failed(self, duration_ms: float | None = None) -> None:
        """Count a terminal failure."""
        self._jobs_failed += 1
        self._failed_counter.inc()
        if duration_ms is not None:
            self.record_job_latency(duration_ms)

    def record_job_retried(self) -> None:
        self._jobs_retried += 1
        self._retried_counter.inc()

    def record_job_latency(self, duration_ms: float) -> None:
        self._latencies_ms.append(duration_ms)
        self._duration_histogram.observe(duration_ms / 1000)

    @property
    def last_depth(self) -> int:
        """Depth seen by the most recent check."""
        return self._last_depth

    def set_in_flight(self, count: int) -> None:
        self._in_flight_gauge.set(count)

    # ----- Load governor -----

    async def get_queue_depth(self) -> int:
        """Ready plus unacknowledged messages on the primary queue."""
        depth = await self._broker.queue_depth()
        self._last_depth = depth
        self._depth_gauge.set(depth)
        return depth

    async def is_queue_overloaded(self, threshold: int | None = None) -> bool:
        """
        Check whether queue depth is above the overload threshold.

        Crossing the threshold emits a `queue.overloaded` event; staying above
        it only logs.

        Args:
            threshold: Override for the configured overload threshold.

        Returns:
            True if depth > threshold.
        """
        threshold = self.overload_threshold if threshold is None else threshold
        depth = await self.get_queue_depth()
        overloaded = depth > threshold

        if overloaded:
            wait_seconds = self.estimate_wait_time(depth)
            logger.warning(
                f"Queue overloaded: {depth} jobs (threshold: {threshold}), "
                f"estimated wait {wait_seconds:.0f}s"
            )
            if not self._overloaded and self._events is not None:
                event = QueueOverloaded(
                    queue_depth=depth,
                    threshold=threshold,
                    estimated_wait_seconds=wait_seconds,
                )
                await self._events.publish(event.topic, event.to_dict())
        elif self._overloaded:
            logger.info(f"Queue load back to normal: {depth} jobs")

        self._overloaded = overloaded
        return overloaded

    async def should_pause_job_creation(self, threshold: int | None = None) -> bool:
        """True when queue depth is above the pause threshold."""
        threshold = self.pause_threshold if threshold is None else threshold
        depth = await self.get_queue_depth()
        paused = depth > threshold
        if paused:
            logger.warning(f"Pausing job creation: {depth} jobs (threshold: {threshold})")
        return paused

    @staticmethod
    def calculate_estimated_wait_time(
        queue_depth: int,
        avg_job_duration_seconds: float,
        concurrency: int = PREFETCH_COUNT,
    ) -> float:
        """
        Estimate how long a newly queued job waits before it starts.

        Args:
            queue_depth: Jobs ahead in the queue.
            avg_job_duration_seconds: Average processing time of one job.
            concurrency: Jobs processed in parallel.

        Returns:
            ceil(queue_depth / concurrency) * avg_job_duration_seconds, or 0
            for an empty queue.
        """
        if queue_depth <= 0:
            return 0
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        return math.ceil(queue_depth / concurrency) * avg_job_duration_seconds

    def average_job_duration_seconds(self) -> float:
        """Rolling average latency, or the configured default with no samples."""
        if not self._latencies_ms:
            return self.default_job_duration_seconds
        return sum(self._latencies_ms) / len(self._latencies_ms) / 1000

    def estimate_wait_time(self, queue_depth: int) -> float:
        return self.calculate_estimated_wait_time(
            queue_depth,
            self.average_job_duration_seconds(),
            self.concurrency,
        )

    async def snapshot(self, in_flight: int = 0) -> QueueSnapshot:
        """Current load picture for status endpoints and the monitor cron."""
        depth = await self.get_queue_depth()
        self.set_in_flight(in_flight)
        return QueueSnapshot(
            depth=depth,
            in_flight=in_flight,
            overloaded=depth > self.overload_threshold,
            paused=depth > self.pause_threshold,
            estimated_wait_seconds=self.estimate_wait_time(depth),
        )

    # ----- Reporting -----

    def get_metrics(self) -> dict[str, Any]:
        avg_latency = (
            sum(self._latencies_ms) / len(self._latencies_ms) if self._latencies_ms else 0
        )
        return {
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
            "jobs_retried": self._jobs_retried,
            "avg_latency_ms": round(avg_latency),
            "current_queue_depth": self._last_depth,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    def get_stats(self) -> dict[str, Any]:
        total = self._jobs_processed + self._jobs_failed
        success_rate = self._jobs_processed / total if total else 0
        return {
            "success_rate": round(success_rate, 2),
            "total_jobs": total,
            "avg_latency_ms": self.get_metrics()["avg_latency_ms"],
        }

    def render_prometheus(self) -> bytes:
        """Prometheus text exposition of this monitor's registry."""
        return generate_latest(self.registry)
