"""Exponential backoff between automatic tombstone delivery attempts."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from dispatch_history.offline.local_store import Tombstone


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and ceiling for tombstone delivery.

    After the n-th failure (n starting at 1) the next attempt waits
    min(max_delay, base_delay * 2 ** (n - 1)) seconds: 1, 2, 4, 8, 16 and
    then 30 with the defaults. A tombstone that has failed max_retries times
    is stuck and is never attempted automatically again.

    Attributes:
        max_retries: Failed attempts after which a tombstone is stuck.
        base_delay_seconds: Delay after the first failure.
        max_delay_seconds: Upper bound on any delay.
    """

    max_retries: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay in seconds before retry number attempt (0-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2**attempt))

    def is_stuck(self, tombstone: Tombstone) -> bool:
        return tombstone.retry_count >= self.max_retries

    def seconds_until_due(self, tombstone: Tombstone, now: datetime) -> float:
        """Return how long until the tombstone may be attempted again.

        Args:
            tombstone: The pending tombstone.
            now: The current time (UTC).

        Returns:
            0.0 when due now.
        """
        if tombstone.retry_count == 0 or tombstone.last_attempted_at is None:
            return 0.0
        due_at = tombstone.last_attempted_at + timedelta(seconds=self.delay_for(tombstone.retry_count - 1))
        return max(0.0, (due_at - now).total_seconds())

    def is_due(self, tombstone: Tombstone, now: datetime) -> bool:
        return self.seconds_until_due(tombstone, now) == 0.0
