"""Batch-level rate limiter for the dispatch loop."""

from typing import Optional


class RateLimiter:
    """Enforce a messages-per-minute ceiling by spacing out whole batches.

    The minimum gap between two batches is ``60 / (rate_per_minute / batch_size)``
    seconds. The limiter never reads a clock itself: callers pass ``now`` and
    call :meth:`record_batch` once a batch has actually been started.
    """

    def __init__(self, rate_per_minute: int = 100, batch_size: int = 10):
        """Store the throughput ceiling and the batch size it is spread over."""
        if int(rate_per_minute) <= 0:
            raise ValueError("rate_per_minute must be positive")
        if int(batch_size) <= 0:
            raise ValueError("batch_size must be positive")
        self.rate_per_minute = int(rate_per_minute)
        self.batch_size = int(batch_size)
        self.last_batch_time: Optional[float] = None

    @property
    def min_interval(self) -> float:
        """Seconds that must separate the start of two consecutive batches."""
        return 60.0 / (self.rate_per_minute / self.batch_size)

    def allow_batch(self, now: float) -> bool:
        """Return ``True`` when a new batch may start at ``now``."""
        if self.last_batch_time is None:
            return True
        return now - self.last_batch_time >= self.min_interval

    def record_batch(self, now: float) -> None:
        """Remember that a batch started at ``now``."""
        self.last_batch_time = now

    def next_allowed_at(self) -> Optional[float]:
        """Return the earliest timestamp for the next batch, if one ran already."""
        if self.last_batch_time is None:
            return None
        return self.last_batch_time + self.min_interval
