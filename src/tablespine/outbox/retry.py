"""Backoff policy for failed outbox tasks.

Example:
    >>> from tablespine.outbox.retry import ExponentialBackoff
    >>>
    >>> backoff = ExponentialBackoff(max_attempts=5, base_delay=1.0, max_delay=60.0, jitter=False)
    >>> [backoff.delay_for_attempts(n) for n in range(1, 5)]
    [1.0, 2.0, 4.0, 8.0]
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from tablespine.errors import is_retryable
from tablespine.settings import TableSpineSettings


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_attempts: Attempts (including the first) before a task is dead-lettered
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    @classmethod
    def from_settings(cls, settings: TableSpineSettings) -> ExponentialBackoff:
        return cls(
            max_attempts=settings.outbox_max_attempts,
            base_delay=settings.outbox_base_backoff_seconds,
            max_delay=settings.outbox_max_backoff_seconds,
            jitter=settings.outbox_backoff_jitter,
        )

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay

    def delay_for_attempts(self, attempts: int) -> float:
        """Delay after a task has failed ``attempts`` times (one-based)."""
        return self.next_delay(max(0, attempts - 1))

    def should_retry(self, attempts: int, error: Exception | None = None, max_attempts: int | None = None) -> bool:
        """Whether a task that has failed ``attempts`` times gets another try."""
        limit = self.max_attempts if max_attempts is None else max_attempts
        if attempts >= limit:
            return False
        if error is not None:
            return is_retryable(error)
        return True
