"""FastAPI dependency injection functions."""

from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis

from digestion.db.redis import get_redis_client
from digestion.db.supabase import SupabaseClient, get_supabase_client
from digestion.queue.broker import RedisJobBroker
from digestion.queue.publisher import DigestionJobPublisher
from digestion.services.event_bus import RedisEventBus
from digestion.services.queue_monitor import QueueMonitor
from digestion.services.submission import DigestionSubmissionService


async def get_redis() -> Redis:
    """Get Redis client on the shared pool."""
    return get_redis_client()


async def get_supabase() -> SupabaseClient:
    """Get Supabase client dependency."""
    return get_supabase_client()


RedisDep = Annotated[Redis, Depends(get_redis)]
SupabaseDep = Annotated[SupabaseClient, Depends(get_supabase)]


async def get_broker(redis: RedisDep) -> RedisJobBroker:
    return RedisJobBroker(redis)


async def get_event_bus(redis: RedisDep) -> RedisEventBus:
    return RedisEventBus(redis)


BrokerDep = Annotated[RedisJobBroker, Depends(get_broker)]
EventBusDep = Annotated[RedisEventBus, Depends(get_event_bus)]


async def get_queue_monitor(broker: BrokerDep, event_bus: EventBusDep) -> QueueMonitor:
    return QueueMonitor(broker, event_bus)


MonitorDep = Annotated[QueueMonitor, Depends(get_queue_monitor)]


async def get_submission_service(
    broker: BrokerDep,
    event_bus: EventBusDep,
    supabase: SupabaseDep,
    monitor: MonitorDep,
) -> DigestionSubmissionService:
    """Get submission service instance."""
    return DigestionSubmissionService(
        publisher=DigestionJobPublisher(broker, event_bus),
        captures=supabase,
        monitor=monitor,
    )


SubmissionDep = Annotated[DigestionSubmissionService, Depends(get_submission_service)]
