"""Domain events emitted by the digestion queue.

These dataclasses are the payloads published on the event bus. Keys are
camelCase on the wire to match the job message format.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

JOB_QUEUED = "job.queued"
JOB_STARTED = "job.started"
JOB_FAILED = "job.failed"
DIGESTION_COMPLETED = "digestion.completed"
QUEUE_OVERLOADED = "queue.overloaded"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class JobQueued:
    """A digestion job was placed on the queue."""

    content_id: str
    owner_id: str
    queued_at: datetime
    priority: str

    topic = JOB_QUEUED

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "ownerId": self.owner_id,
            "queuedAt": self.queued_at.isoformat(),
            "priority": self.priority,
        }


@dataclass
class JobStarted:
    """A consumer began processing a job."""

    content_id: str
    owner_id: str
    retry_count: int
    started_at: datetime = field(default_factory=_now)

    topic = JOB_STARTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "ownerId": self.owner_id,
            "retryCount": self.retry_count,
            "startedAt": self.started_at.isoformat(),
        }


@dataclass
class DigestionCompleted:
    """A capture was digested and its items persisted."""

    content_id: str
    owner_id: str
    thought_id: str
    item_count: int
    processing_time_ms: int
    completed_at: datetime = field(default_factory=_now)

    topic = DIGESTION_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "ownerId": self.owner_id,
            "thoughtId": self.thought_id,
            "itemCount": self.item_count,
            "processingTimeMs": self.processing_time_ms,
            "completedAt": self.completed_at.isoformat(),
        }


@dataclass
class DigestionJobFailed:
    """A job failed for the last time and was dead-lettered."""

    content_id: str
    owner_id: str
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=_now)

    topic = JOB_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "ownerId": self.owner_id,
            "error": self.error,
            "attempts": self.attempts,
            "failedAt": self.failed_at.isoformat(),
        }


@dataclass
class QueueOverloaded:
    """Queue depth crossed the overload threshold."""

    queue_depth: int
    threshold: int
    estimated_wait_seconds: float
    detected_at: datetime = field(default_factory=_now)

    topic = QUEUE_OVERLOADED

    def to_dict(self) -> dict[str, Any]:
        return {
            "queueDepth": self.queue_depth,
            "threshold": self.threshold,
            "estimatedWaitSeconds": self.estimated_wait_seconds,
            "detectedAt": self.detected_at.isoformat(),
        }


DigestionEvent = JobQueued | JobStarted | DigestionCompleted | DigestionJobFailed | QueueOverloaded
