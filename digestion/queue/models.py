"""
Digestion Job Models

Wire message, delivery envelope, pipeline results, and the processing outcome
returned by the consumer pipeline.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ContentType(str, Enum):
    """Kind of capture content being digested."""

    AUDIO_TRANSCRIBED = "audio_transcribed"
    TEXT = "text"


class JobPriority(str, Enum):
    """Scheduling priority of a digestion job."""

    NORMAL = "normal"
    HIGH = "high"


class CaptureStatus(str, Enum):
    """Digestion status stored on the capture record."""

    QUEUED_FOR_DIGESTION = "queued_for_digestion"
    DIGESTING = "digesting"
    DIGESTED = "digested"
    DIGESTION_FAILED = "digestion_failed"


class JobStage(str, Enum):
    """Pipeline stage reported by the progress tracker."""

    RECEIVED = "received"
    EXTRACTING = "extracting"
    AI_PROCESSING = "ai_processing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


CONFIDENCE_SCORES: dict[str, float] = {
    "high": 0.9,
    "medium": 0.6,
    "low": 0.3,
}


AUDIO_CAPTURE_TYPES = {"audio", "voice"}


def content_type_for_capture(capture: dict[str, Any]) -> ContentType:
    """Audio captures are digested from their transcript, everything else as text."""
    capture_type = str(capture.get("capture_type") or "").lower()
    if capture_type in AUDIO_CAPTURE_TYPES:
        return ContentType.AUDIO_TRANSCRIBED
    return ContentType.TEXT


def confidence_to_score(confidence: str | None) -> float | None:
    """Map a confidence label from the AI response to a numeric score."""
    if confidence is None:
        return None
    return CONFIDENCE_SCORES.get(confidence.lower())


class DigestionJob(BaseModel):
    """Message placed on the digestion queue.

    Serialized with camelCase keys (`contentId`, `ownerId`, `retryCount`, ...).
    A redelivered job is a new instance with `retry_count + 1`.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=False,
    )

    content_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    content_type: ContentType
    priority: JobPriority = JobPriority.NORMAL
    queued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = Field(default=0, ge=0)

    def next_attempt(self) -> "DigestionJob":
        """Copy of this job for the next delivery attempt."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})

    def to_message(self) -> str:
        """Serialize to the JSON wire format."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_message(cls, raw: str | bytes) -> "DigestionJob":
        """Parse a job from the JSON wire format."""
        return cls.model_validate_json(raw)

    def to_payload(self) -> dict[str, Any]:
        """Wire-format dict, used for logging."""
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class EnqueuedJob:
    """Receipt for a published job."""

    message_id: str
    job: DigestionJob

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "contentId": self.job.content_id,
            "priority": self.job.priority.value,
            "queuedAt": self.job.queued_at.isoformat(),
        }


@dataclass(frozen=True)
class Delivery:
    """A message handed to a consumer and not yet acknowledged."""

    message_id: str
    job: DigestionJob
    score: float
    delivered_at: float


@dataclass
class ExtractedContent:
    """Plain text pulled from a capture, ready for the AI service."""

    content: str
    content_type: ContentType


class DigestionResponse(BaseModel):
    """Structured digest returned by the AI service."""

    summary: str = Field(..., min_length=1)
    ideas: list[str] = Field(default_factory=list)
    confidence: Literal["high", "medium", "low"] | None = None


@dataclass
class DigestResult:
    """Persisted digest: the thought row and the number of derived items."""

    thought_id: str
    item_count: int


# ----- Processing outcome -----


@dataclass(frozen=True)
class Success:
    """Pipeline finished; the message is acknowledged."""

    result: DigestResult
    duration_ms: int


@dataclass(frozen=True)
class RetryableFailure:
    """Pipeline failed; the message is redelivered after `delay_seconds`."""

    reason: str
    delay_seconds: int
    duration_ms: int = 0


@dataclass(frozen=True)
class TerminalFailure:
    """Pipeline failed for the last time; the message goes to the failure queue."""

    reason: str
    stack_trace: str | None = None
    duration_ms: int = 0


ProcessingOutcome = Success | RetryableFailure | TerminalFailure


@dataclass
class QueueSnapshot:
    """Point-in-time view of queue load."""

    depth: int
    in_flight: int
    overloaded: bool
    paused: bool
    estimated_wait_seconds: float
    captured_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "in_flight": self.in_flight,
            "overloaded": self.overloaded,
            "paused": self.paused,
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "captured_at": self.captured_at.isoformat(),
        }
