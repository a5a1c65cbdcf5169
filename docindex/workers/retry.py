"""
Re-enqueue delay policy for transient pipeline failures.

Delay before attempt N+1 (N = attempt that just failed, 1-based):

    min(initial * multiplier ** (N - 1), max_backoff)  ±jitter_percent

With the defaults (2s, x2, 60s cap, ±25%): ~2s, ~4s, ~8s … capped at ~60s.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from docindex.core.config import Settings


def calculate_backoff(
    attempt: int,
    initial_backoff: float,
    backoff_multiplier: float,
    max_backoff: float,
    jitter_percent: float,
    rng: random.Random | None = None,
) -> float:
    """
    Args:
        attempt: Retry number, 0-indexed (0 = first retry)
        initial_backoff: Base delay in seconds
        backoff_multiplier: Exponential multiplier
        max_backoff: Cap applied before jitter
        jitter_percent: Random jitter range (0.25 = ±25%)

    Returns:
        Delay in seconds, never negative
    """
    backoff = min(initial_backoff * (backoff_multiplier ** attempt), max_backoff)
    jitter_range = backoff * jitter_percent
    backoff += (rng or random).uniform(-jitter_range, jitter_range)
    return max(0.0, backoff)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts:       int   = 3
    initial_backoff:    float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff:        float = 60.0
    jitter_percent:     float = 0.25

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_backoff=settings.retry_initial_backoff,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_backoff=settings.retry_max_backoff,
            jitter_percent=settings.retry_jitter_percent,
        )

    def should_retry(self, attempt: int) -> bool:
        """True when the job that just ran as `attempt` may run again."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return calculate_backoff(
            attempt - 1,
            self.initial_backoff,
            self.backoff_multiplier,
            self.max_backoff,
            self.jitter_percent,
        )
