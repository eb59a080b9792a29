"""
Digestion Error Types

Every error carries a stable `code` used in batch results, API error bodies,
and failure logs.
"""


class DigestionError(Exception):
    """Base class for digestion queue errors."""

    code = "DigestionError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ----- Publish side -----


class PublishError(DigestionError):
    """A job could not be placed on the queue."""

    code = "PublishError"


class BrokerUnreachableError(PublishError):
    """The broker rejected or never received the publish."""

    code = "BrokerUnreachable"


class JobCreationPausedError(DigestionError):
    """New digestion jobs are refused while the queue is over the pause threshold."""

    code = "JobCreationPaused"

    def __init__(self, queue_depth: int, estimated_wait_seconds: float) -> None:
        minutes = max(1, round(estimated_wait_seconds / 60))
        super().__init__(
            "Digestion is temporarily paused because the queue is full. "
            f"Please try again in about {minutes} minute{'s' if minutes != 1 else ''}."
        )
        self.queue_depth = queue_depth
        self.estimated_wait_seconds = estimated_wait_seconds


class CaptureNotFoundError(DigestionError):
    """The referenced capture does not exist."""

    code = "CaptureNotFound"

    def __init__(self, capture_id: str) -> None:
        super().__init__(f"Capture {capture_id} not found")
        self.capture_id = capture_id


class InvalidCaptureStateError(DigestionError):
    """The capture is not in a state that allows the requested operation."""

    code = "InvalidCaptureState"

    def __init__(self, capture_id: str, status: str | None, expected: str) -> None:
        super().__init__(
            f"Capture {capture_id} has status '{status}', expected '{expected}'"
        )
        self.capture_id = capture_id
        self.status = status
        self.expected = expected


# ----- Processing side -----


class JobTimeoutExceeded(DigestionError):
    """The pipeline did not finish inside the per-job deadline."""

    code = "JobTimeoutExceeded"

    def __init__(self, capture_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Digestion of capture {capture_id} exceeded {timeout_seconds:g}s timeout"
        )
        self.capture_id = capture_id
        self.timeout_seconds = timeout_seconds


class ContentExtractionError(DigestionError):
    """Capture content could not be loaded or was empty."""

    code = "ContentExtractionFailed"


class DigestionResponseError(DigestionError):
    """The AI response could not be parsed into a digest."""

    code = "InvalidDigestionResponse"


class PersistenceError(DigestionError):
    """A write to the content store failed."""

    code = "PersistenceFailed"


# ----- Broker topology -----


class TopologyMismatchError(DigestionError):
    """Declared queue topology conflicts with what the broker already holds."""

    code = "TopologyMismatch"

    def __init__(self, field: str, existing: str, declared: str) -> None:
        super().__init__(
            f"Queue topology mismatch on '{field}': broker has '{existing}', "
            f"worker declares '{declared}'. Delete the existing topology keys "
            "or align the configuration before restarting."
        )
        self.field = field
        self.existing = existing
        self.declared = declared
