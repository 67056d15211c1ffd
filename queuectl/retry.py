"""
Retry policy: exponential backoff with a cap and bounded jitter.

The policy holds only its frozen configuration, so the same inputs
(including the jitter sample) always produce the same schedule.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from queuectl.types.job import RuntimeConfig


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt."""

    retry: bool
    attempts: int
    run_at: datetime | None = None
    delay: timedelta | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    delay(n) = min(base * 2**(n-1), max_delay) + jitter * max_jitter
    where n is the number of failed attempts so far (first failure -> 1).
    """

    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    max_jitter_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if self.max_delay_seconds <= 0:
            raise ValueError("max_delay_seconds must be > 0")
        if self.max_jitter_seconds < 0:
            raise ValueError("max_jitter_seconds must be >= 0")

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "RetryPolicy":
        return cls(
            base_delay_seconds=config.backoff_base_seconds,
            max_delay_seconds=config.backoff_max_seconds,
            max_jitter_seconds=config.backoff_jitter_seconds,
        )

    def backoff(self, attempts: int, jitter: float | None = None) -> timedelta:
        """
        Delay before the next attempt.

        Args:
            attempts: Failed attempts so far; values below 1 count as 1.
            jitter: Sample in [0, 1). Drawn from random.random() if omitted.

        Returns:
            A strictly positive timedelta.
        """
        if jitter is None:
            jitter = random.random()
        jitter = min(max(jitter, 0.0), 1.0)

        exponent = max(attempts, 1) - 1
        # 2**exponent overflows float quickly; the cap makes larger values moot
        if exponent >= 64:
            delay = self.max_delay_seconds
        else:
            delay = min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

        return timedelta(seconds=delay + jitter * self.max_jitter_seconds)

    @staticmethod
    def should_retry(attempts: int, max_retries: int) -> bool:
        """A job is retried while its failed attempts do not exceed max_retries."""
        return attempts <= max_retries

    def decide(
        self,
        attempts: int,
        max_retries: int,
        now: datetime,
        jitter: float | None = None,
    ) -> RetryDecision:
        """
        Decide what happens after a failure.

        Args:
            attempts: Failed attempts including the one just reported.
            max_retries: The job's retry ceiling.
            now: Reference time for the next run.
            jitter: Optional fixed jitter sample.
        """
        if not self.should_retry(attempts, max_retries):
            return RetryDecision(retry=False, attempts=attempts)

        delay = self.backoff(attempts, jitter)
        return RetryDecision(
            retry=True,
            attempts=attempts,
            run_at=now + delay,
            delay=delay,
        )
