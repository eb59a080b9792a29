"""Event publication to Redis streams.

Each topic maps to its own capped stream (`events:{topic}`). Publication is
best effort: a failed XADD is logged and never fails the caller's job.
"""

import json
from typing import Any

from redis.asyncio import Redis

from digestion.config import config
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


class RedisEventBus:
    """Publishes domain events to Redis streams.

    Attributes:
        redis: Redis client for streaming
        stream_prefix: Prefix of every stream key
        maxlen: Approximate number of entries kept per stream
    """

    def __init__(
        self,
        redis: Redis,
        stream_prefix: str | None = None,
        maxlen: int | None = None,
    ):
        self.redis = redis
        self.stream_prefix = stream_prefix or config.event_stream_prefix
        self.maxlen = maxlen or config.event_stream_maxlen

    def stream_key(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish an event payload on a topic.

        Args:
            topic: Event topic, e.g. "job.queued"
            payload: JSON-serializable event body
        """
        try:
            await self.redis.xadd(
                self.stream_key(topic),
                {"topic": topic, "data": json.dumps(payload, default=str)},
                maxlen=self.maxlen,
                approximate=True,
            )
            logger.debug(f"Emitted {topic} event")
        except Exception as e:
            logger.error(f"Event emission failed for {topic}: {e}")
