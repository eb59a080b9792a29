"""
Progress Tracker

In-memory, per-process progress of digestion jobs keyed by capture id.
Finished records stay readable for a retention window so clients can see the
final state, then `cleanup_old_jobs` removes them.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from digestion.config import config
from digestion.queue.models import JobStage
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


class ProgressStatus(str, Enum):
    """Lifecycle of a tracked job."""

    DIGESTING = "digesting"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProgressRecord:
    """Progress of one capture's digestion."""

    capture_id: str
    owner_id: str
    status: ProgressStatus
    percent: int
    stage: JobStage
    started_at: datetime
    last_updated_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    failure_reason: str | None = None

    @property
    def failed_at(self) -> datetime | None:
        return self.completed_at if self.status is ProgressStatus.FAILED else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "capture_id": self.capture_id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "percent": self.percent,
            "stage": self.stage.value,
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "duration_ms": self.duration_ms,
            "failure_reason": self.failure_reason,
        }


class ProgressTracker:
    """Tracks digestion progress for the jobs this process is handling."""

    def __init__(self, retention_seconds: int | None = None) -> None:
        self.retention_seconds = (
            config.progress_retention_seconds if retention_seconds is None else retention_seconds
        )
        self._records: dict[str, ProgressRecord] = {}

    def start_tracking(self, capture_id: str, owner_id: str) -> ProgressRecord:
        """Start a fresh record, replacing any record from an earlier attempt."""
        now = datetime.now(UTC)
        record = ProgressRecord(
            capture_id=capture_id,
            owner_id=owner_id,
            status=ProgressStatus.DIGESTING,
            percent=0,
            stage=JobStage.RECEIVED,
            started_at=now,
            last_updated_at=now,
        )
        self._records[capture_id] = record
        logger.debug(f"Started tracking {capture_id}", extra={"user_id": owner_id})
        return record

    def update_progress(
        self,
        capture_id: str,
        percent: float,
        stage: JobStage | None = None,
    ) -> ProgressRecord | None:
        """
        Set the progress percentage of a job.

        Args:
            capture_id: Capture being processed.
            percent: New percentage; clamped to 0..100.
            stage: Optional pipeline stage to record.

        Returns:
            The updated record, or None for an unknown capture.
        """
        record = self._records.get(capture_id)
        if record is None:
            logger.warning(f"Cannot update progress for unknown job: {capture_id}")
            return None

        record.percent = int(max(0, min(100, percent)))
        if stage is not None:
            record.stage = stage
        record.last_updated_at = datetime.now(UTC)

        logger.debug(f"Progress update: {capture_id} - {record.percent}%")
        return record

    def complete_tracking(self, capture_id: str) -> ProgressRecord | None:
        """Mark a job completed at 100%."""
        record = self._records.get(capture_id)
        if record is None:
            logger.warning(f"Cannot complete tracking for unknown job: {capture_id}")
            return None

        now = datetime.now(UTC)
        record.status = ProgressStatus.COMPLETED
        record.stage = JobStage.COMPLETED
        record.percent = 100
        record.completed_at = now
        record.last_updated_at = now
        record.duration_ms = int((now - record.started_at).total_seconds() * 1000)

        logger.info(
            f"Completed tracking: {capture_id}",
            extra={"duration_ms": record.duration_ms},
        )
        return record

    def fail_tracking(self, capture_id: str, reason: str) -> ProgressRecord | None:
        """Mark a job failed, keeping its last percentage."""
        record = self._records.get(capture_id)
        if record is None:
            logger.warning(f"Cannot fail tracking for unknown job: {capture_id}")
            return None

        now = datetime.now(UTC)
        record.status = ProgressStatus.FAILED
        record.stage = JobStage.FAILED
        record.failure_reason = reason
        record.completed_at = now
        record.last_updated_at = now
        record.duration_ms = int((now - record.started_at).total_seconds() * 1000)

        logger.error(
            f"Failed tracking: {capture_id} - {reason}",
            extra={"duration_ms": record.duration_ms},
        )
        return record

    def mark_retrying(self, capture_id: str, reason: str) -> ProgressRecord | None:
        """
        Close the current attempt of a job that will be redelivered.

        The record leaves the active set and expires like a finished record.
        The next attempt, on this worker or another, starts a fresh record.
        """
        record = self._records.get(capture_id)
        if record is None:
            logger.warning(f"Cannot mark unknown job for retry: {capture_id}")
            return None

        now = datetime.now(UTC)
        record.status = ProgressStatus.RETRY_PENDING
        record.failure_reason = reason
        record.completed_at = now
        record.last_updated_at = now
        record.duration_ms = int((now - record.started_at).total_seconds() * 1000)

        logger.info(f"Attempt ended, retry pending: {capture_id} - {reason}")
        return record

    def get_progress(self, capture_id: str) -> ProgressRecord | None:
        return self._records.get(capture_id)

    def get_active_jobs(self) -> list[ProgressRecord]:
        """Jobs still being digested."""
        return [r for r in self._records.values() if r.status is ProgressStatus.DIGESTING]

    def get_user_jobs(self, owner_id: str) -> list[ProgressRecord]:
        """All tracked jobs for one owner, active or finished."""
        return [r for r in self._records.values() if r.owner_id == owner_id]

    def cleanup_old_jobs(
        self,
        retention_seconds: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Remove finished records older than the retention window.

        Args:
            retention_seconds: Age threshold; defaults to the tracker's retention.
            now: Reference time, defaults to the current time.

        Returns:
            Number of records removed.
        """
        retention = timedelta(
            seconds=self.retention_seconds if retention_seconds is None else retention_seconds
        )
        now = now or datetime.now(UTC)

        expired = [
            capture_id
            for capture_id, record in self._records.items()
            if record.status is not ProgressStatus.DIGESTING
            and record.completed_at is not None
            and now - record.completed_at >= retention
        ]
        for capture_id in expired:
            del self._records[capture_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} old progress records")
        return len(expired)

    def get_stats(self) -> dict[str, int]:
        records = list(self._records.values())
        return {
            "total": len(records),
            "active": sum(1 for r in records if r.status is ProgressStatus.DIGESTING),
            "completed": sum(1 for r in records if r.status is ProgressStatus.COMPLETED),
            "failed": sum(1 for r in records if r.status is ProgressStatus.FAILED),
            "retry_pending": sum(1 for r in records if r.status is ProgressStatus.RETRY_PENDING),
        }
