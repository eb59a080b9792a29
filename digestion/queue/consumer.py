"""
Digestion Job Consumer

Pulls jobs from the broker with at most PREFETCH_COUNT unacknowledged at a
time and runs each through the digestion pipeline:

    received -> extracting -> ai_processing -> persisting -> completed

Each run races a wall-clock timer. The pipeline returns a ProcessingOutcome
and `_settle` turns it into ack, delayed retry, or dead-letter.
"""

import asyncio
import json
import time
import traceback
from datetime import UTC, datetime

from redis.exceptions import RedisError

from digestion.config import config
from digestion.errors import JobTimeoutExceeded
from digestion.events import DigestionCompleted, DigestionJobFailed, JobStarted
from digestion.queue.broker import RedisJobBroker
from digestion.queue.models import (
    CaptureStatus,
    Delivery,
    DigestionJob,
    JobStage,
    ProcessingOutcome,
    RetryableFailure,
    Success,
    TerminalFailure,
    confidence_to_score,
)
from digestion.queue.retry_policy import MAX_RETRIES, decide_retry
from digestion.queue.shutdown import GracefulShutdownCoordinator
from digestion.queue.topology import JOB_TIMEOUT_SECONDS, PREFETCH_COUNT
from digestion.services.interfaces import (
    ContentExtractor,
    ContentRepository,
    DerivedItemRepository,
    DigestionService,
    EventBus,
)
from digestion.services.progress_tracker import ProgressTracker
from digestion.services.queue_monitor import QueueMonitor
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class DigestionJobConsumer:
    """Consumes digestion jobs and settles each with the broker."""

    def __init__(
        self,
        broker: RedisJobBroker,
        content_repository: ContentRepository,
        extractor: ContentExtractor,
        digestion_service: DigestionService,
        item_repository: DerivedItemRepository,
        event_bus: EventBus,
        progress_tracker: ProgressTracker,
        monitor: QueueMonitor,
        shutdown: GracefulShutdownCoordinator | None = None,
        prefetch_count: int = PREFETCH_COUNT,
        job_timeout: float = JOB_TIMEOUT_SECONDS,
        poll_interval: float | None = None,
    ) -> None:
        self._broker = broker
        self._captures = content_repository
        self._extractor = extractor
        self._digestion = digestion_service
        self._items = item_repository
        self._events = event_bus
        self._progress = progress_tracker
        self._monitor = monitor
        self._shutdown = shutdown or GracefulShutdownCoordinator()
        self._prefetch_count = prefetch_count
        self._job_timeout = job_timeout
        self._poll_interval = (
            config.consumer_poll_interval if poll_interval is None else poll_interval
        )
        self._slots = asyncio.Semaphore(prefetch_count)
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self._abandoned: set[asyncio.Future[Success]] = set()

    def get_prefetch_count(self) -> int:
        return self._prefetch_count

    def get_job_timeout(self) -> float:
        return self._job_timeout

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_shutting_down

    @property
    def in_flight_count(self) -> int:
        return self._shutdown.in_flight_count

    # ----- Consume loop -----

    async def run(self) -> None:
        """Fetch and dispatch deliveries until shutdown starts."""
        logger.info(
            f"Consuming {self._broker.topology.queue_name} "
            f"(prefetch {self._prefetch_count}, timeout {self._job_timeout:g}s)"
        )

        while not self.is_shutting_down:
            await self._slots.acquire()
            if self.is_shutting_down:
                self._slots.release()
                break

            try:
                delivery = await self._broker.fetch()
            except RedisError as e:
                self._slots.release()
                logger.error(f"Failed to fetch from {self._broker.topology.queue_name}: {e}")
                await self._shutdown.wait_for_shutdown(self._poll_interval)
                continue

            if delivery is None:
                self._slots.release()
                await self._shutdown.wait_for_shutdown(self._poll_interval)
                continue

            task = asyncio.create_task(self._dispatch(delivery))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

        logger.info("Consume loop stopped")

    async def _dispatch(self, delivery: Delivery) -> None:
        try:
            await self.handle_delivery(delivery)
        except Exception:
            # Message stays unacked; stale delivery recovery will requeue it
            logger.exception(
                f"Failed to settle delivery for capture {delivery.job.content_id}",
                extra={"message_id": delivery.message_id, "capture_id": delivery.job.content_id},
            )
        finally:
            self._slots.release()
            self._monitor.set_in_flight(self.in_flight_count)

    async def shutdown(self) -> None:
        """Stop taking work and wait for in-flight jobs to settle."""
        await self._shutdown.shutdown()

    # ----- Delivery handling -----

    async def handle_delivery(self, delivery: Delivery) -> ProcessingOutcome | None:
        """
        Process one delivery and settle it with the broker.

        Args:
            delivery: Message handed over by the broker.

        Returns:
            The processing outcome, or None if the delivery was handed back
            because shutdown has started.
        """
        if self.is_shutting_down:
            await self._broker.requeue(delivery)
            logger.info(
                f"Shutting down, returned capture {delivery.job.content_id} to the queue",
                extra={"message_id": delivery.message_id},
            )
            return None

        handler = self._shutdown.track(asyncio.ensure_future(self._handle(delivery)))
        self._monitor.set_in_flight(self.in_flight_count)
        return await handler

    async def _handle(self, delivery: Delivery) -> ProcessingOutcome:
        outcome = await self.process_with_timeout(delivery.job)
        await self._settle(delivery, outcome)
        return outcome

    async def process_with_timeout(self, job: DigestionJob) -> ProcessingOutcome:
        """
        Run the pipeline against the job timeout; whichever finishes first wins.

        A pipeline that loses the race is left running and its result is
        discarded. It stops at its next step once the deadline has passed, so
        it never persists or reports progress over a later attempt.

        Args:
            job: Job to process.

        Returns:
            Success, or a retryable/terminal failure chosen by the retry policy.
        """
        started = time.perf_counter()
        deadline_passed = asyncio.Event()
        pipeline = asyncio.ensure_future(self._process_digestion(job, started, deadline_passed))

        done, _ = await asyncio.wait({pipeline}, timeout=self._job_timeout)
        if pipeline in done:
            error = pipeline.exception()
            if error is None:
                return pipeline.result()
            return self._failure_outcome(job, error, started)

        deadline_passed.set()
        self._abandoned.add(pipeline)
        pipeline.add_done_callback(self._abandoned.discard)
        pipeline.add_done_callback(self._log_abandoned_pipeline(job))
        return self._failure_outcome(
            job, JobTimeoutExceeded(job.content_id, self._job_timeout), started
        )

    def _check_deadline(self, job: DigestionJob, deadline_passed: asyncio.Event) -> None:
        if deadline_passed.is_set():
            raise JobTimeoutExceeded(job.content_id, self._job_timeout)

    async def _process_digestion(
        self,
        job: DigestionJob,
        started: float,
        deadline_passed: asyncio.Event,
    ) -> Success:
        capture_id = job.content_id
        owner_id = job.owner_id

        self._progress.start_tracking(capture_id, owner_id)
        await self._captures.update_status(
            capture_id,
            CaptureStatus.DIGESTING,
            {"processing_started_at": _now_iso()},
        )
        started_event = JobStarted(
            content_id=capture_id, owner_id=owner_id, retry_count=job.retry_count
        )
        await self._events.publish(started_event.topic, started_event.to_dict())
        self._progress.update_progress(capture_id, 10, JobStage.RECEIVED)

        # Extract
        self._progress.update_progress(capture_id, 20, JobStage.EXTRACTING)
        extracted = await self._extractor.extract_content(capture_id)
        self._check_deadline(job, deadline_passed)
        self._progress.update_progress(capture_id, 40, JobStage.AI_PROCESSING)

        # Digest
        response = await self._digestion.digest(extracted.content, extracted.content_type)
        self._check_deadline(job, deadline_passed)
        self._progress.update_progress(capture_id, 70, JobStage.PERSISTING)

        # Persist
        result = await self._items.create_with_items(
            capture_id=capture_id,
            owner_id=owner_id,
            summary=response.summary,
            items=response.ideas,
            processing_time_ms=_elapsed_ms(started),
            confidence_score=confidence_to_score(response.confidence),
        )
        self._check_deadline(job, deadline_passed)
        self._progress.update_progress(capture_id, 90)

        await self._captures.update_status(
            capture_id,
            CaptureStatus.DIGESTED,
            {"processing_completed_at": _now_iso()},
        )
        self._check_deadline(job, deadline_passed)
        duration_ms = _elapsed_ms(started)
        completed = DigestionCompleted(
            content_id=capture_id,
            owner_id=owner_id,
            thought_id=result.thought_id,
            item_count=result.item_count,
            processing_time_ms=duration_ms,
        )
        await self._events.publish(completed.topic, completed.to_dict())
        self._progress.complete_tracking(capture_id)

        return Success(result=result, duration_ms=duration_ms)

    def _failure_outcome(
        self,
        job: DigestionJob,
        error: BaseException,
        started: float,
    ) -> RetryableFailure | TerminalFailure:
        duration_ms = _elapsed_ms(started)
        label = "JobTimeoutExceeded" if isinstance(error, JobTimeoutExceeded) else "JobFailed"
        stack_trace = "".join(traceback.format_exception(error))

        logger.error(
            f"{label}: capture {job.content_id} failed after {duration_ms}ms: {error}",
            extra={
                "capture_id": job.content_id,
                "user_id": job.owner_id,
                "retry_count": job.retry_count,
                "duration_ms": duration_ms,
                "error_message": str(error),
                "stack_trace": stack_trace,
                "job_payload": json.dumps(job.to_payload()),
            },
        )

        decision = decide_retry(job.retry_count)
        if decision.should_retry:
            return RetryableFailure(
                reason=str(error),
                delay_seconds=decision.delay_seconds,
                duration_ms=duration_ms,
            )
        return TerminalFailure(reason=str(error), stack_trace=stack_trace, duration_ms=duration_ms)

    def _log_abandoned_pipeline(self, job: DigestionJob):
        def callback(task: asyncio.Future) -> None:
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.warning(
                    f"Timed-out pipeline for capture {job.content_id} later failed: {error}",
                    extra={"capture_id": job.content_id},
                )
            else:
                logger.warning(
                    f"Timed-out pipeline for capture {job.content_id} finished after the deadline",
                    extra={"capture_id": job.content_id},
                )

        return callback

    # ----- Settlement -----

    async def _settle(self, delivery: Delivery, outcome: ProcessingOutcome) -> None:
        job = delivery.job

        if isinstance(outcome, Success):
            await self._broker.ack(delivery)
            self._monitor.record_job_processed(outcome.duration_ms)
            logger.info(
                f"Digested capture {job.content_id} into {outcome.result.item_count} item(s)",
                extra={
                    "capture_id": job.content_id,
                    "user_id": job.owner_id,
                    "duration_ms": outcome.duration_ms,
                },
            )
            return

        if isinstance(outcome, RetryableFailure):
            retried = await self._broker.reject(delivery, outcome.delay_seconds)
            self._progress.mark_retrying(job.content_id, outcome.reason)
            self._monitor.record_job_retried()
            logger.warning(
                f"Capture {job.content_id} will be retried "
                f"(attempt {retried.retry_count + 1}/{MAX_RETRIES}) in {outcome.delay_seconds}s",
                extra={"capture_id": job.content_id, "retry_count": retried.retry_count},
            )
            return

        await self._fail_permanently(delivery, outcome)

    async def _fail_permanently(self, delivery: Delivery, outcome: TerminalFailure) -> None:
        job = delivery.job
        attempts = job.retry_count + 1
        logger.error(
            f"Capture {job.content_id} permanently failed after {attempts} attempts",
            extra={"capture_id": job.content_id, "user_id": job.owner_id},
        )

        self._progress.fail_tracking(job.content_id, outcome.reason)
        self._monitor.record_job_failed(outcome.duration_ms)

        try:
            await self._captures.update_status(
                job.content_id,
                CaptureStatus.DIGESTION_FAILED,
                {
                    "processing_completed_at": _now_iso(),
                    "error_message": outcome.reason,
                    "error_stack": outcome.stack_trace,
                },
            )
            failed = DigestionJobFailed(
                content_id=job.content_id,
                owner_id=job.owner_id,
                error=outcome.reason,
                attempts=attempts,
            )
            await self._events.publish(failed.topic, failed.to_dict())
        finally:
            await self._broker.dead_letter(delivery, outcome.reason)
