"""Retry policy applied when a delivery attempt fails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .models import ItemStatus

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAYS: Tuple[int, ...] = (60, 300, 900, 3600, 7200)  # 1min, 5min, 15min, 1h, 2h


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt: the next status, attempt count and due time."""

    status: ItemStatus
    attempts: int
    scheduled_ts: Optional[int] = None
    delay: Optional[int] = None


class RetryPolicy:
    """Table driven backoff with a ceiling on the number of attempts.

    ``backoff(n)`` returns the delay to wait after the ``n``-th failed attempt.
    Attempts beyond the table reuse the last delay, so the function is
    non-decreasing as long as the table is.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, delays: Optional[Sequence[int]] = None):
        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be at least 1")
        table = tuple(int(d) for d in (delays if delays is not None else DEFAULT_RETRY_DELAYS))
        if not table:
            raise ValueError("delays must not be empty")
        if any(d < 0 for d in table):
            raise ValueError("delays must be non-negative")
        if any(later < earlier for earlier, later in zip(table, table[1:])):
            raise ValueError("delays must be non-decreasing")
        self.max_attempts = int(max_attempts)
        self.delays = table

    def backoff(self, attempts: int) -> int:
        """Delay in seconds after ``attempts`` failed attempts."""
        index = max(0, int(attempts) - 1)
        if index >= len(self.delays):
            return self.delays[-1]
        return self.delays[index]

    def should_retry(self, attempts: int) -> bool:
        """Whether another attempt is allowed once ``attempts`` have been made."""
        return int(attempts) < self.max_attempts

    def on_failure(self, attempts_before: int, now_ts: int) -> RetryDecision:
        """Decide what a failed attempt does to an item that had ``attempts_before`` attempts."""
        attempts = max(0, int(attempts_before)) + 1
        if not self.should_retry(attempts):
            return RetryDecision(status=ItemStatus.FAILED, attempts=attempts)
        delay = self.backoff(attempts)
        return RetryDecision(
            status=ItemStatus.RESCHEDULED,
            attempts=attempts,
            scheduled_ts=int(now_ts) + delay,
            delay=delay,
        )
