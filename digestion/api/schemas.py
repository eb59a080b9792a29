"""Request and response schemas for the digestion API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from digestion.queue.models import EnqueuedJob


class SubmitRequest(BaseModel):
    """Request to queue a single capture."""

    user_initiated: bool = Field(
        default=False,
        description="Explicit user request; queued ahead of background work",
    )


class BatchSubmitRequest(BaseModel):
    """Request to queue several captures, most recent first."""

    capture_ids: list[str] = Field(..., min_length=1, max_length=100)


class EnqueuedJobResponse(BaseModel):
    """A capture placed on the digestion queue."""

    capture_id: str
    message_id: str
    priority: str
    status: str = "queued"
    queued_at: datetime

    @classmethod
    def from_enqueued(cls, enqueued: EnqueuedJob) -> "EnqueuedJobResponse":
        return cls(
            capture_id=enqueued.job.content_id,
            message_id=enqueued.message_id,
            priority=enqueued.job.priority.value,
            queued_at=enqueued.job.queued_at,
        )


class BatchSuccessItem(BaseModel):
    capture_id: str
    status: str
    message_id: str


class BatchErrorItem(BaseModel):
    capture_id: str
    error: str = Field(..., description="Stable error code, e.g. CaptureNotFound")
    message: str


class BatchSubmitResponse(BaseModel):
    """Per-capture batch results in request order."""

    success: list[BatchSuccessItem] = Field(default_factory=list)
    errors: list[BatchErrorItem] = Field(default_factory=list)


class QueueStatusResponse(BaseModel):
    """Current queue load."""

    depth: int
    overloaded: bool
    paused: bool
    estimated_wait_seconds: float
    ready: int
    unacked: int
    retrying: int
    failed: int


class FailedJobsResponse(BaseModel):
    """Entries in the failure queue, newest first."""

    total: int
    jobs: list[dict[str, Any]]


class ErrorResponse(BaseModel):
    detail: str
    code: str
