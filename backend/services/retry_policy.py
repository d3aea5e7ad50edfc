"""Retry/backoff policy for provisioning jobs.

Retries are persisted transitions (RETRY_SCHEDULED + next_attempt_at), not
in-process sleeps; this module only computes the numbers.
"""
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = MAX_ATTEMPTS
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    jitter: float = 0.1  # fraction of the delay added at random

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
        )

    def exhausted(self, attempt_count: int) -> bool:
        """True once attempt_count failed attempts leave no budget."""
        return attempt_count >= self.max_attempts

    def delay_for(self, attempt_count: int) -> float:
        """Delay after the attempt_count-th failure: base * 2**(n-1), capped."""
        exponent = max(attempt_count - 1, 0)
        delay = min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)
        if self.jitter:
            delay = min(delay + random.uniform(0, delay * self.jitter), self.max_delay_seconds)
        return delay

    def next_attempt_at(self, attempt_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempt_count))
