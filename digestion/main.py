"""
ARQ Worker Entry Point

Defines the WorkerSettings class for the digestion worker. ARQ owns the
process lifecycle and the maintenance cron jobs; the digestion consumer runs
as a background task started in `startup` and drained in `shutdown`.

Usage:
    arq digestion.main.WorkerSettings
"""

import asyncio
from typing import Any

from arq import cron
from arq.connections import RedisSettings
from prometheus_client import start_http_server

from digestion.config import config
from digestion.db.redis import (
    RedisHealthCheck,
    close_redis_pool,
    get_redis_client,
    get_redis_settings,
)
from digestion.db.supabase import get_supabase_client
from digestion.queue.broker import RedisJobBroker
from digestion.queue.consumer import DigestionJobConsumer
from digestion.services.content_extractor import CaptureContentExtractor
from digestion.services.digestion_llm import GeminiDigestionService
from digestion.services.event_bus import RedisEventBus
from digestion.services.progress_tracker import ProgressTracker
from digestion.services.queue_monitor import QueueMonitor
from digestion.utils.logger import JobLogger, get_logger, setup_logging

logger = get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """
    Worker startup hook.

    Declares the queue topology, recovers deliveries left behind by a dead
    worker, wires the pipeline, and starts consuming.

    Args:
        ctx: Worker context dict that persists across jobs.
    """
    setup_logging()
    logger.info(f"Starting {config.worker_name} in {config.environment} mode")

    redis = get_redis_client()
    broker = RedisJobBroker(redis)
    await broker.declare()
    await broker.recover_stale_deliveries(config.stale_delivery_seconds)

    event_bus = RedisEventBus(redis)
    progress_tracker = ProgressTracker()
    monitor = QueueMonitor(broker, event_bus)
    supabase = get_supabase_client()

    consumer = DigestionJobConsumer(
        broker=broker,
        content_repository=supabase,
        extractor=CaptureContentExtractor(supabase),
        digestion_service=GeminiDigestionService(),
        item_repository=supabase,
        event_bus=event_bus,
        progress_tracker=progress_tracker,
        monitor=monitor,
    )

    metrics_server, _ = start_http_server(config.metrics_port, registry=monitor.registry)
    logger.info(f"Prometheus metrics exposed on :{config.metrics_port}/metrics")

    ctx["broker"] = broker
    ctx["monitor"] = monitor
    ctx["progress_tracker"] = progress_tracker
    ctx["consumer"] = consumer
    ctx["metrics_server"] = metrics_server
    ctx["consumer_task"] = asyncio.create_task(consumer.run())

    logger.info(f"{config.worker_name} started successfully")


async def shutdown(ctx: dict[str, Any]) -> None:
    """
    Worker shutdown hook.

    Stops the consumer, waits for every in-flight job to settle, then
    releases the metrics server and Redis pool.

    Args:
        ctx: Worker context dict.
    """
    logger.info(f"Shutting down {config.worker_name}")

    consumer: DigestionJobConsumer | None = ctx.get("consumer")
    if consumer is not None:
        await consumer.shutdown()
        await ctx["consumer_task"]

    metrics_server = ctx.get("metrics_server")
    if metrics_server is not None:
        metrics_server.shutdown()

    await close_redis_pool()
    logger.info(f"{config.worker_name} shut down complete")


# Scheduled jobs


async def monitor_queue_load(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: sample queue depth and raise the overload signal."""
    monitor: QueueMonitor = ctx["monitor"]
    consumer: DigestionJobConsumer = ctx["consumer"]

    with JobLogger(logger, "monitor_queue_load"):
        await monitor.is_queue_overloaded()
        snapshot = await monitor.snapshot(in_flight=consumer.in_flight_count)

    return snapshot.to_dict()


async def recover_stale_deliveries(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: requeue deliveries whose consumer disappeared."""
    broker: RedisJobBroker = ctx["broker"]

    with JobLogger(logger, "recover_stale_deliveries"):
        recovered = await broker.recover_stale_deliveries(config.stale_delivery_seconds)

    return {"recovered": recovered}


async def cleanup_progress(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: drop finished progress records past their retention."""
    progress_tracker: ProgressTracker = ctx["progress_tracker"]
    removed = progress_tracker.cleanup_old_jobs()
    return {"removed": removed, **progress_tracker.get_stats()}


class WorkerSettings:
    """
    ARQ Worker Settings class.

    Digestion jobs are consumed from the priority queue by the consumer
    task, not by ARQ. ARQ provides:
    - Redis connection settings and health checks
    - Signal handling and the startup/shutdown hooks
    - Cron jobs for queue monitoring and maintenance
    """

    # Redis connection
    redis_settings: RedisSettings = get_redis_settings()

    functions: list = []

    cron_jobs = [
        # Sample queue load every minute
        cron(monitor_queue_load, second=0, run_at_startup=True),
        # Recover abandoned deliveries every 5 minutes
        cron(
            recover_stale_deliveries,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=False,
        ),
        # Expire finished progress records every minute
        cron(cleanup_progress, second=30, run_at_startup=False),
    ]

    # Worker lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Maintenance queue configuration
    queue_name = config.arq_queue_name
    max_jobs = 2
    job_timeout = 60

    # Health check interval
    health_check_interval = config.broker_heartbeat_seconds

    keep_result = 300


# Convenience function to run worker programmatically
def run_worker() -> None:
    """Run the ARQ worker."""
    import subprocess
    import sys

    subprocess.run(
        [sys.executable, "-m", "arq", "digestion.main.WorkerSettings"],
        check=True,
    )


# Health check endpoint for container orchestration
async def health_check() -> dict[str, Any]:
    """
    Perform health check on worker dependencies.

    Returns:
        Health status dict.
    """
    health: dict[str, Any] = {
        "status": "healthy",
        "checks": {},
    }

    redis_ok = await RedisHealthCheck.check_connection()
    health["checks"]["redis"] = "ok" if redis_ok else "error"

    supabase_ok = await get_supabase_client().check_connection()
    health["checks"]["supabase"] = "ok" if supabase_ok else "error"

    if not all(v == "ok" for v in health["checks"].values()):
        health["status"] = "unhealthy"

    return health


if __name__ == "__main__":
    # Allow running directly with: python -m digestion.main
    run_worker()
