"""Digestion submission and queue inspection routes."""

import logging

from fastapi import APIRouter, Query, status

from digestion.api.dependencies import BrokerDep, MonitorDep, SubmissionDep
from digestion.api.schemas import (
    BatchErrorItem,
    BatchSubmitRequest,
    BatchSubmitResponse,
    BatchSuccessItem,
    EnqueuedJobResponse,
    ErrorResponse,
    FailedJobsResponse,
    QueueStatusResponse,
    SubmitRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    status.HTTP_503_SERVICE_UNAVAILABLE: {
        "model": ErrorResponse,
        "description": "Job creation paused or broker unreachable",
    },
}


@router.post(
    "/batch",
    response_model=BatchSubmitResponse,
    status_code=status.HTTP_200_OK,
    summary="Queue several captures",
    description="Queue each capture as its own job; per-capture errors do not fail the batch",
    responses=ERROR_RESPONSES,
)
async def submit_batch(
    request: BatchSubmitRequest,
    submission: SubmissionDep,
) -> BatchSubmitResponse:
    """Queue a batch of captures for digestion."""
    result = await submission.submit_batch(request.capture_ids)
    return BatchSubmitResponse(
        success=[BatchSuccessItem(**item) for item in result.success],
        errors=[BatchErrorItem(**item) for item in result.errors],
    )


@router.get(
    "/queue",
    response_model=QueueStatusResponse,
    summary="Queue status",
    description="Current depth, load flags, and estimated wait",
)
async def queue_status(broker: BrokerDep, monitor: MonitorDep) -> QueueStatusResponse:
    """Report queue load."""
    snapshot = await monitor.snapshot()
    stats = await broker.stats()
    return QueueStatusResponse(
        depth=snapshot.depth,
        overloaded=snapshot.overloaded,
        paused=snapshot.paused,
        estimated_wait_seconds=snapshot.estimated_wait_seconds,
        **stats,
    )


@router.get(
    "/failed",
    response_model=FailedJobsResponse,
    summary="Failure queue",
    description="Jobs that exhausted their retries, newest first",
)
async def failed_jobs(
    broker: BrokerDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> FailedJobsResponse:
    """List dead-lettered jobs."""
    stats = await broker.stats()
    jobs = await broker.failed_jobs(limit=limit)
    return FailedJobsResponse(total=stats["failed"], jobs=jobs)


@router.post(
    "/{capture_id}",
    response_model=EnqueuedJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a capture",
    description="Queue one capture for digestion; user-initiated requests get high priority",
    responses=ERROR_RESPONSES,
)
async def submit_capture(
    capture_id: str,
    submission: SubmissionDep,
    request: SubmitRequest | None = None,
) -> EnqueuedJobResponse:
    """Queue a single capture."""
    user_initiated = request.user_initiated if request else False
    enqueued = await submission.submit(capture_id, user_initiated=user_initiated)
    return EnqueuedJobResponse.from_enqueued(enqueued)


@router.post(
    "/{capture_id}/retry",
    response_model=EnqueuedJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed capture",
    description="Requeue a capture in digestion_failed with a fresh retry budget",
    responses=ERROR_RESPONSES,
)
async def retry_capture(capture_id: str, submission: SubmissionDep) -> EnqueuedJobResponse:
    """Manually retry a failed capture."""
    enqueued = await submission.retry_failed(capture_id)
    logger.info(f"Manual retry queued for capture {capture_id}")
    return EnqueuedJobResponse.from_enqueued(enqueued)
