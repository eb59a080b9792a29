"""
Queue Topology

Names, priority range, and Redis key layout for the digestion queue, plus
declaration and verification of that topology against the broker.
"""

from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis

from digestion.config import config
from digestion.errors import TopologyMismatchError
from digestion.queue.models import JobPriority
from digestion.queue.retry_policy import MAX_RETRIES, RETRY_DELAYS_SECONDS
from digestion.utils.logger import get_logger

logger = get_logger(__name__)

# Unacknowledged messages allowed per consumer
PREFETCH_COUNT = 3

# Wall-clock limit for one pipeline run, in seconds
JOB_TIMEOUT_SECONDS = 60

# Multiplier separating priority bands in the queue score
PRIORITY_BAND = 10**12


@dataclass(frozen=True)
class QueueTopology:
    """Digestion queue topology.

    The primary queue is a sorted set ordered by priority band then publish
    sequence. Rejected messages are dead-lettered through the retry set
    (scored by ready time) or into the failure list, which is never expired.
    """

    key_prefix: str = "digestion"
    queue_name: str = "digestion-jobs"
    dead_letter_exchange: str = "digestion-dlx"
    failed_queue_name: str = "digestion-failed"
    max_priority: int = 10
    prefetch_count: int = PREFETCH_COUNT
    heartbeat_seconds: int = 30

    def __post_init__(self) -> None:
        if not 1 <= self.max_priority <= 255:
            raise ValueError(f"max_priority must be in 1..255, got {self.max_priority}")
        if self.prefetch_count < 1:
            raise ValueError(f"prefetch_count must be >= 1, got {self.prefetch_count}")

    @classmethod
    def from_config(cls) -> "QueueTopology":
        """Build the topology from application settings."""
        return cls(
            key_prefix=config.queue_key_prefix,
            queue_name=config.queue_name,
            dead_letter_exchange=config.dead_letter_exchange,
            failed_queue_name=config.failed_queue_name,
            max_priority=config.queue_max_priority,
            heartbeat_seconds=config.broker_heartbeat_seconds,
        )

    def priority_value(self, priority: JobPriority) -> int:
        """Numeric broker priority for a job priority."""
        if priority is JobPriority.HIGH:
            return self.max_priority
        return 0

    # ----- Redis keys -----

    def _key(self, *parts: str) -> str:
        return ":".join((self.key_prefix, *parts))

    @property
    def queue_key(self) -> str:
        return self._key("queue", self.queue_name)

    @property
    def messages_key(self) -> str:
        return self._key("queue", self.queue_name, "messages")

    @property
    def unacked_key(self) -> str:
        return self._key("queue", self.queue_name, "unacked")

    @property
    def sequence_key(self) -> str:
        return self._key("queue", self.queue_name, "seq")

    @property
    def retry_key(self) -> str:
        return self._key("dlx", self.dead_letter_exchange, "retry")

    @property
    def failed_key(self) -> str:
        return self._key("queue", self.failed_queue_name)

    @property
    def topology_key(self) -> str:
        return self._key("topology")

    def score_for(self, priority_value: int, sequence: int) -> float:
        """Queue score: lower pops first, so higher priority maps to a lower band."""
        return float((self.max_priority - priority_value) * PRIORITY_BAND + sequence)

    def describe(self) -> dict[str, str]:
        """Topology fields stored in Redis and checked on every start."""
        return {
            "queue_name": self.queue_name,
            "max_priority": str(self.max_priority),
            "dead_letter_exchange": self.dead_letter_exchange,
            "failed_queue_name": self.failed_queue_name,
            "max_retries": str(MAX_RETRIES),
            "retry_delays": ",".join(
                str(RETRY_DELAYS_SECONDS[attempt]) for attempt in sorted(RETRY_DELAYS_SECONDS)
            ),
        }


async def declare_topology(redis: Redis, topology: QueueTopology) -> dict[str, Any]:
    """
    Declare the topology on the broker, or verify an existing declaration.

    Args:
        redis: Redis client.
        topology: Topology this process expects.

    Returns:
        The declared topology fields.

    Raises:
        TopologyMismatchError: If the broker holds a conflicting declaration.
    """
    declared = topology.describe()
    existing = await redis.hgetall(topology.topology_key)

    if not existing:
        await redis.hset(topology.topology_key, mapping=declared)
        logger.info(
            f"Declared queue topology: {topology.queue_name} "
            f"(max priority {topology.max_priority}, dlx {topology.dead_letter_exchange}, "
            f"failed queue {topology.failed_queue_name})"
        )
        return declared

    for field_name, value in declared.items():
        current = existing.get(field_name)
        if current is not None and current != value:
            raise TopologyMismatchError(field_name, current, value)

    missing = {k: v for k, v in declared.items() if k not in existing}
    if missing:
        await redis.hset(topology.topology_key, mapping=missing)

    logger.info(f"Verified existing queue topology for {topology.queue_name}")
    return declared
