"""
Redis Job Broker

Durable priority queue for digestion jobs on Redis. This module is the only
place that knows the key layout:

- queue (sorted set): message id -> priority band + publish sequence
- messages (hash): message id -> JSON envelope with the job body and its score
- unacked (hash): message id -> delivery timestamp
- retry (sorted set): message id -> time the message becomes ready again
- failed (list): dead-lettered envelopes, kept until removed by an operator

Message ids are never duplicated across the queue, retry, and unacked sets,
so promoting or requeueing the same message twice is a no-op.
"""

import json
import time
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import WatchError

from digestion.queue.models import Delivery, DigestionJob, EnqueuedJob
from digestion.queue.topology import QueueTopology, declare_topology
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


def _envelope(job: DigestionJob, score: float | None) -> str:
    return json.dumps({"body": job.to_message(), "score": score})


class RedisJobBroker:
    """Broker adapter for the digestion queue."""

    def __init__(self, redis: Redis, topology: QueueTopology | None = None) -> None:
        self._redis = redis
        self.topology = topology or QueueTopology.from_config()

    @property
    def redis(self) -> Redis:
        return self._redis

    async def declare(self) -> dict[str, Any]:
        """Declare or verify the queue topology."""
        return await declare_topology(self._redis, self.topology)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    # ----- Publish -----

    async def publish(self, job: DigestionJob) -> EnqueuedJob:
        """
        Place a job on the primary queue.

        Args:
            job: Job to enqueue.

        Returns:
            EnqueuedJob receipt with the broker message id.
        """
        t = self.topology
        sequence = await self._redis.incr(t.sequence_key)
        score = t.score_for(t.priority_value(job.priority), sequence)
        message_id = uuid4().hex

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(t.messages_key, message_id, _envelope(job, score))
            pipe.zadd(t.queue_key, {message_id: score})
            await pipe.execute()

        logger.debug(
            f"Published job for capture {job.content_id} with priority {job.priority.value}",
            extra={"message_id": message_id, "capture_id": job.content_id},
        )
        return EnqueuedJob(message_id=message_id, job=job)

    # ----- Consume -----

    async def fetch(self) -> Delivery | None:
        """
        Take the next message off the queue and mark it unacknowledged.

        Due retries are promoted back onto the queue first.

        Returns:
            Delivery for the highest-priority, oldest message, or None if empty.
        """
        await self.promote_due_retries()
        t = self.topology

        while True:
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(t.queue_key)
                    head = await pipe.zrange(t.queue_key, 0, 0, withscores=True)
                    if not head:
                        return None

                    message_id, score = head[0]
                    delivered_at = time.time()

                    pipe.multi()
                    pipe.zrem(t.queue_key, message_id)
                    pipe.hset(t.unacked_key, message_id, str(delivered_at))
                    pipe.hget(t.messages_key, message_id)
                    _, _, raw = await pipe.execute()
            except WatchError:
                # Another consumer took the head; try again
                continue

            if raw is None:
                # Acked elsewhere after a stale recovery; nothing left to deliver
                await self._redis.hdel(t.unacked_key, message_id)
                logger.warning(f"Dropped queue entry {message_id} with no message body")
                continue

            envelope = json.loads(raw)
            job = DigestionJob.from_message(envelope["body"])
            return Delivery(
                message_id=message_id,
                job=job,
                score=score,
                delivered_at=delivered_at,
            )

    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge a delivery and forget the message."""
        t = self.topology
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hdel(t.unacked_key, delivery.message_id)
            pipe.hdel(t.messages_key, delivery.message_id)
            await pipe.execute()

    async def requeue(self, delivery: Delivery) -> None:
        """Return an unprocessed delivery to its original queue position."""
        t = self.topology
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hdel(t.unacked_key, delivery.message_id)
            pipe.zadd(t.queue_key, {delivery.message_id: delivery.score})
            await pipe.execute()

        logger.info(
            f"Requeued message for capture {delivery.job.content_id}",
            extra={"message_id": delivery.message_id, "capture_id": delivery.job.content_id},
        )

    async def reject(self, delivery: Delivery, delay_seconds: float) -> DigestionJob:
        """
        Dead-letter a delivery through the retry path.

        The message comes back onto the primary queue after `delay_seconds`
        with its retry count incremented.

        Args:
            delivery: Failed delivery.
            delay_seconds: Time before redelivery.

        Returns:
            The job as it will be redelivered.
        """
        t = self.topology
        retried = delivery.job.next_attempt()
        ready_at = time.time() + delay_seconds

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hdel(t.unacked_key, delivery.message_id)
            pipe.hset(t.messages_key, delivery.message_id, _envelope(retried, None))
            pipe.zadd(t.retry_key, {delivery.message_id: ready_at})
            await pipe.execute()

        return retried

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        """Move a delivery to the failure queue."""
        t = self.topology
        record = {
            "messageId": delivery.message_id,
            "job": delivery.job.to_payload(),
            "reason": reason,
            "failedAt": datetime.now(UTC).isoformat(),
        }

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hdel(t.unacked_key, delivery.message_id)
            pipe.hdel(t.messages_key, delivery.message_id)
            pipe.lpush(t.failed_key, json.dumps(record))
            await pipe.execute()

        logger.info(
            f"Moved capture {delivery.job.content_id} to {t.failed_queue_name}",
            extra={"message_id": delivery.message_id, "capture_id": delivery.job.content_id},
        )

    # ----- Maintenance -----

    async def promote_due_retries(self, now: float | None = None) -> int:
        """
        Move retry messages whose delay has elapsed back onto the primary queue.

        Promoted messages take a fresh sequence number, so they land at the
        back of their priority tier.

        Returns:
            Number of messages promoted by this call.
        """
        t = self.topology
        now = time.time() if now is None else now
        due = await self._redis.zrangebyscore(t.retry_key, "-inf", now)
        promoted = 0

        for message_id in due:
            raw = await self._redis.hget(t.messages_key, message_id)
            if raw is None:
                await self._redis.zrem(t.retry_key, message_id)
                continue

            job = DigestionJob.from_message(json.loads(raw)["body"])
            sequence = await self._redis.incr(t.sequence_key)
            score = t.score_for(t.priority_value(job.priority), sequence)

            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(t.retry_key)
                    if await pipe.zscore(t.retry_key, message_id) is None:
                        continue
                    pipe.multi()
                    pipe.zrem(t.retry_key, message_id)
                    pipe.hset(t.messages_key, message_id, _envelope(job, score))
                    pipe.zadd(t.queue_key, {message_id: score})
                    await pipe.execute()
            except WatchError:
                # Promoted by another consumer
                continue
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} retry message(s) to {t.queue_name}")
        return promoted

    async def recover_stale_deliveries(self, max_age_seconds: float) -> int:
        """
        Requeue deliveries left unacknowledged longer than `max_age_seconds`.

        Covers consumers that died holding messages.

        Returns:
            Number of messages requeued.
        """
        t = self.topology
        cutoff = time.time() - max_age_seconds
        unacked = await self._redis.hgetall(t.unacked_key)
        recovered = 0

        for message_id, delivered_at in unacked.items():
            if float(delivered_at) > cutoff:
                continue

            raw = await self._redis.hget(t.messages_key, message_id)
            if raw is None:
                await self._redis.hdel(t.unacked_key, message_id)
                continue
            score = json.loads(raw)["score"]

            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(t.unacked_key)
                    if await pipe.hget(t.unacked_key, message_id) != delivered_at:
                        continue
                    pipe.multi()
                    pipe.hdel(t.unacked_key, message_id)
                    pipe.zadd(t.queue_key, {message_id: score})
                    await pipe.execute()
            except WatchError:
                continue
            recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stale deliveries on {t.queue_name}")
        return recovered

    # ----- Inspection -----

    async def queue_depth(self) -> int:
        """Messages waiting plus messages delivered but not yet acknowledged."""
        t = self.topology
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(t.queue_key)
            pipe.hlen(t.unacked_key)
            ready, unacked = await pipe.execute()
        return int(ready) + int(unacked)

    async def stats(self) -> dict[str, int]:
        """Counts for every part of the topology."""
        t = self.topology
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(t.queue_key)
            pipe.hlen(t.unacked_key)
            pipe.zcard(t.retry_key)
            pipe.llen(t.failed_key)
            ready, unacked, retrying, failed = await pipe.execute()
        return {
            "ready": int(ready),
            "unacked": int(unacked),
            "retrying": int(retrying),
            "failed": int(failed),
        }

    async def failed_jobs(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent entries of the failure queue."""
        raw = await self._redis.lrange(self.topology.failed_key, 0, limit - 1)
        return [json.loads(item) for item in raw]
