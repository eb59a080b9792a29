"""
Digestion Submission Service

Entry points used by the HTTP API: single submit, batch submit, and manual
retry of a failed capture. All three refuse new work while the queue is over
the pause threshold.
"""

from dataclasses import dataclass, field
from typing import Any

from digestion.errors import (
    CaptureNotFoundError,
    DigestionError,
    InvalidCaptureStateError,
    JobCreationPausedError,
)
from digestion.queue.models import (
    CaptureStatus,
    EnqueuedJob,
    JobPriority,
    content_type_for_capture,
)
from digestion.queue.publisher import DigestionJobPublisher
from digestion.services.interfaces import ContentRepository
from digestion.services.queue_monitor import QueueMonitor
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BatchSubmissionResult:
    """Per-capture results of a batch submission, in request order."""

    success: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "errors": self.errors}


class DigestionSubmissionService:
    """Validates captures and hands them to the job publisher."""

    def __init__(
        self,
        publisher: DigestionJobPublisher,
        captures: ContentRepository,
        monitor: QueueMonitor,
    ) -> None:
        self._publisher = publisher
        self._captures = captures
        self._monitor = monitor

    async def ensure_accepting_jobs(self) -> None:
        """
        Raise if job creation is paused.

        Raises:
            JobCreationPausedError: Queue depth is above the pause threshold.
        """
        if await self._monitor.should_pause_job_creation():
            depth = self._monitor.last_depth
            raise JobCreationPausedError(depth, self._monitor.estimate_wait_time(depth))

    async def _load_capture(self, capture_id: str) -> dict[str, Any]:
        capture = await self._captures.get_capture(capture_id)
        if capture is None:
            raise CaptureNotFoundError(capture_id)
        return capture

    async def _enqueue(
        self,
        capture: dict[str, Any],
        priority: JobPriority,
        previous_status: str | None,
    ) -> EnqueuedJob:
        capture_id = capture["id"]

        # Mark queued before publishing so a fast consumer's "digesting" is not overwritten
        await self._captures.update_status(
            capture_id,
            CaptureStatus.QUEUED_FOR_DIGESTION,
            {"error_message": None},
        )
        try:
            return await self._publisher.publish(
                capture_id,
                capture["user_id"],
                content_type_for_capture(capture),
                priority,
            )
        except DigestionError:
            if previous_status:
                await self._captures.update_status(capture_id, CaptureStatus(previous_status))
            raise

    async def submit(self, capture_id: str, user_initiated: bool = False) -> EnqueuedJob:
        """
        Queue one capture for digestion.

        Args:
            capture_id: Capture to digest.
            user_initiated: User explicitly asked for it; queued at high priority.

        Returns:
            EnqueuedJob receipt.
        """
        await self.ensure_accepting_jobs()
        capture = await self._load_capture(capture_id)
        priority = JobPriority.HIGH if user_initiated else JobPriority.NORMAL
        return await self._enqueue(capture, priority, _known_status(capture))

    async def submit_batch(self, capture_ids: list[str]) -> BatchSubmissionResult:
        """
        Queue several captures, one job each, continuing past per-item errors.

        Args:
            capture_ids: Captures to digest, in order.

        Returns:
            BatchSubmissionResult; successes carry status "queued", errors carry
            a stable error code such as "CaptureNotFound".
        """
        await self.ensure_accepting_jobs()
        result = BatchSubmissionResult()

        for capture_id in capture_ids:
            try:
                capture = await self._load_capture(capture_id)
                enqueued = await self._enqueue(capture, JobPriority.NORMAL, _known_status(capture))
            except DigestionError as e:
                logger.warning(f"Batch item {capture_id} not queued: {e.message}")
                result.errors.append(
                    {"capture_id": capture_id, "error": e.code, "message": e.message}
                )
                continue

            result.success.append(
                {
                    "capture_id": capture_id,
                    "status": "queued",
                    "message_id": enqueued.message_id,
                }
            )

        logger.info(
            f"Batch submission complete: {len(result.success)} queued, "
            f"{len(result.errors)} failed"
        )
        return result

    async def retry_failed(self, capture_id: str) -> EnqueuedJob:
        """
        Manually retry a capture whose digestion failed for good.

        The job restarts with retry count 0 at high priority.

        Raises:
            CaptureNotFoundError: Unknown capture.
            InvalidCaptureStateError: Capture is not in digestion_failed.
        """
        await self.ensure_accepting_jobs()
        capture = await self._load_capture(capture_id)

        status = capture.get("status")
        if status != CaptureStatus.DIGESTION_FAILED.value:
            raise InvalidCaptureStateError(
                capture_id, status, CaptureStatus.DIGESTION_FAILED.value
            )

        logger.info(f"Manual retry requested for capture {capture_id}")
        return await self._enqueue(capture, JobPriority.HIGH, status)


def _known_status(capture: dict[str, Any]) -> str | None:
    status = capture.get("status")
    if status in {s.value for s in CaptureStatus}:
        return status
    return None
