"""
Retry/Backoff Policy

Lookup-table backoff for failed digestion jobs. A job runs at most
MAX_RETRIES times: the delivery with `retry_count` r >= MAX_RETRIES - 1 is the
last one, and any earlier failure is redelivered with r + 1 after the table
delay for retry r + 1.
"""

from dataclasses import dataclass
from enum import Enum

MAX_RETRIES = 3

# Attempt number -> delay in seconds before redelivery
RETRY_DELAYS_SECONDS: dict[int, int] = {
    1: 5,
    2: 15,
    3: 45,
}


class RetryAction(str, Enum):
    """What to do with a failed job."""

    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    """Result of applying the retry policy to a failed job."""

    action: RetryAction
    delay_seconds: int | None = None
    next_retry_count: int | None = None

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


def get_retry_delay(attempt: int) -> int:
    """
    Look up the redelivery delay for a retry attempt.

    Args:
        attempt: 1-based retry attempt number.

    Returns:
        Delay in seconds.

    Raises:
        ValueError: If the attempt is outside the retry table.
    """
    try:
        return RETRY_DELAYS_SECONDS[attempt]
    except KeyError:
        raise ValueError(
            f"No retry delay for attempt {attempt}; attempts run 1..{MAX_RETRIES}"
        ) from None


def decide_retry(retry_count: int) -> RetryDecision:
    """
    Decide whether a job that just failed should be retried.

    Args:
        retry_count: The failed job's retry count (0 on first delivery).

    Returns:
        RetryDecision with the delay for the next attempt, or a terminal decision.
    """
    if retry_count < 0:
        raise ValueError(f"retry_count must be >= 0, got {retry_count}")

    # retry_count is zero-based, so MAX_RETRIES - 1 is the last attempt
    if retry_count >= MAX_RETRIES - 1:
        return RetryDecision(action=RetryAction.FAIL)

    next_attempt = retry_count + 1
    return RetryDecision(
        action=RetryAction.RETRY,
        delay_seconds=get_retry_delay(next_attempt),
        next_retry_count=next_attempt,
    )
