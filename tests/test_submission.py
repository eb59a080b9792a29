"""Tests for single, batch, and manual-retry submission."""

import pytest

from digestion.errors import (
    BrokerUnreachableError,
    CaptureNotFoundError,
    InvalidCaptureStateError,
    JobCreationPausedError,
)
from digestion.queue.models import CaptureStatus, ContentType, JobPriority
from digestion.services.queue_monitor import QueueMonitor
from digestion.services.submission import DigestionSubmissionService


@pytest.fixture
def submission(publisher, capture_store, monitor) -> DigestionSubmissionService:
    return DigestionSubmissionService(publisher, capture_store, monitor)


async def test_submit_marks_capture_queued(submission, capture_store, broker):
    capture_store.add_capture("cap-1")

    enqueued = await submission.submit("cap-1")

    assert enqueued.job.priority is JobPriority.NORMAL
    assert capture_store.captures["cap-1"]["status"] == "queued_for_digestion"
    assert await broker.queue_depth() == 1


async def test_user_initiated_submit_is_high_priority(submission, capture_store):
    capture_store.add_capture("cap-1")

    enqueued = await submission.submit("cap-1", user_initiated=True)

    assert enqueued.job.priority is JobPriority.HIGH


async def test_audio_capture_submitted_as_transcript(submission, capture_store):
    capture_store.add_capture("cap-1", capture_type="audio")

    enqueued = await submission.submit("cap-1")

    assert enqueued.job.content_type is ContentType.AUDIO_TRANSCRIBED


async def test_submit_unknown_capture(submission, broker):
    with pytest.raises(CaptureNotFoundError):
        await submission.submit("missing")

    assert await broker.queue_depth() == 0


async def test_batch_reports_missing_captures(submission, capture_store, broker):
    for capture_id in ("cap-1", "cap-2", "cap-4", "cap-5"):
        capture_store.add_capture(capture_id)

    result = await submission.submit_batch(["cap-1", "cap-2", "cap-3", "cap-4", "cap-5"])

    assert [item["capture_id"] for item in result.success] == ["cap-1", "cap-2", "cap-4", "cap-5"]
    assert all(item["status"] == "queued" for item in result.success)
    assert len(result.errors) == 1
    assert result.errors[0]["capture_id"] == "cap-3"
    assert result.errors[0]["error"] == "CaptureNotFound"
    assert await broker.queue_depth() == 4


async def test_submission_refused_when_paused(publisher, capture_store, broker, event_bus):
    monitor = QueueMonitor(
        broker,
        event_bus,
        overload_threshold=0,
        pause_threshold=0,
        default_job_duration_seconds=20,
    )
    submission = DigestionSubmissionService(publisher, capture_store, monitor)
    capture_store.add_capture("cap-1")
    capture_store.add_capture("cap-2")
    await submission.submit("cap-1")

    with pytest.raises(JobCreationPausedError) as exc_info:
        await submission.submit("cap-2")

    assert exc_info.value.queue_depth == 1
    assert "try again in about 1 minute" in exc_info.value.message
    assert capture_store.captures["cap-2"]["status"] == "captured"

    with pytest.raises(JobCreationPausedError):
        await submission.submit_batch(["cap-2"])


async def test_retry_failed_requeues_at_high_priority(submission, capture_store):
    capture_store.add_capture(
        "cap-1", status="digestion_failed", error_message="AI service unavailable"
    )

    enqueued = await submission.retry_failed("cap-1")

    assert enqueued.job.priority is JobPriority.HIGH
    assert enqueued.job.retry_count == 0
    assert capture_store.captures["cap-1"]["status"] == "queued_for_digestion"
    assert capture_store.captures["cap-1"]["error_message"] is None


async def test_retry_failed_requires_failed_status(submission, capture_store):
    capture_store.add_capture("cap-1", status="digested")

    with pytest.raises(InvalidCaptureStateError) as exc_info:
        await submission.retry_failed("cap-1")

    assert exc_info.value.status == "digested"
    assert capture_store.statuses_for("cap-1") == []


async def test_retry_failed_unknown_capture(submission):
    with pytest.raises(CaptureNotFoundError):
        await submission.retry_failed("missing")


async def test_failed_publish_restores_previous_status(submission, capture_store, broker):
    capture_store.add_capture("cap-1", status="digestion_failed")

    async def refuse(job):
        raise OSError("broker down")

    broker.publish = refuse

    with pytest.raises(BrokerUnreachableError):
        await submission.retry_failed("cap-1")

    assert capture_store.statuses_for("cap-1") == [
        CaptureStatus.QUEUED_FOR_DIGESTION,
        CaptureStatus.DIGESTION_FAILED,
    ]
    assert capture_store.captures["cap-1"]["status"] == "digestion_failed"
