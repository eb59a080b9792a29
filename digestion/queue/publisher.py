"""
Digestion Job Publisher

Turns "this capture is ready" into exactly one durable message on the
digestion queue and announces it with a `job.queued` event. No existence
check and no deduplication happen here.
"""

from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError

from digestion.errors import BrokerUnreachableError, DigestionError
from digestion.events import JobQueued
from digestion.queue.broker import RedisJobBroker
from digestion.queue.models import ContentType, DigestionJob, EnqueuedJob, JobPriority
from digestion.services.interfaces import EventBus
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PublishRequest:
    """One capture to enqueue in a batch publish."""

    content_id: str
    owner_id: str
    content_type: ContentType
    priority: JobPriority = JobPriority.NORMAL


@dataclass
class BatchPublishResult:
    """Successes and per-item errors of a batch publish, in input order."""

    success: list[EnqueuedJob] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


class DigestionJobPublisher:
    """Publishes digestion jobs onto the broker."""

    def __init__(self, broker: RedisJobBroker, event_bus: EventBus) -> None:
        self._broker = broker
        self._events = event_bus

    async def publish(
        self,
        content_id: str,
        owner_id: str,
        content_type: ContentType,
        priority: JobPriority = JobPriority.NORMAL,
        retry_count: int = 0,
    ) -> EnqueuedJob:
        """
        Enqueue one digestion job.

        Args:
            content_id: Capture to digest.
            owner_id: Owner of the capture.
            content_type: Audio transcript or text.
            priority: "high" jumps ahead of all "normal" jobs.
            retry_count: Starting retry count, 0 for fresh and manual-retry jobs.

        Returns:
            EnqueuedJob receipt.

        Raises:
            BrokerUnreachableError: If the broker did not accept the message.
        """
        job = DigestionJob(
            content_id=content_id,
            owner_id=owner_id,
            content_type=content_type,
            priority=priority,
            retry_count=retry_count,
        )

        try:
            enqueued = await self._broker.publish(job)
        except (RedisError, OSError) as e:
            logger.error(
                f"Failed to publish digestion job for capture {content_id}: {e}",
                extra={"capture_id": content_id, "user_id": owner_id},
            )
            raise BrokerUnreachableError(
                f"Failed to publish digestion job for capture {content_id}: {e}"
            ) from e

        event = JobQueued(
            content_id=content_id,
            owner_id=owner_id,
            queued_at=job.queued_at,
            priority=priority.value,
        )
        await self._events.publish(event.topic, event.to_dict())

        logger.info(
            f"Queued capture {content_id} for digestion ({priority.value} priority)",
            extra={"capture_id": content_id, "user_id": owner_id, "message_id": enqueued.message_id},
        )
        return enqueued

    async def publish_batch(self, requests: list[PublishRequest]) -> BatchPublishResult:
        """
        Publish several jobs independently, continuing past failures.

        Args:
            requests: Captures to enqueue, in order.

        Returns:
            BatchPublishResult with one entry per request.
        """
        result = BatchPublishResult()

        for request in requests:
            try:
                enqueued = await self.publish(
                    request.content_id,
                    request.owner_id,
                    request.content_type,
                    request.priority,
                )
                result.success.append(enqueued)
            except DigestionError as e:
                result.errors.append(
                    {"content_id": request.content_id, "error": e.code, "message": e.message}
                )

        logger.info(
            f"Batch publish: {len(result.success)} queued, {len(result.errors)} failed"
        )
        return result
