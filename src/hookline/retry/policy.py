"""Retry backoff policy.

delay(n) = min(base * multiplier^(n-1), max_delay), jittered by up to ±10%,
where n is the number of failed attempts so far (n >= 1).

Default schedule (base=1s, multiplier=2, max_attempts=3, max_delay=30s):
  delay(1)=1s, delay(2)=2s, delay(3)=4s
  attempt 1 fails: retry after delay(1)
  attempt 2 fails: retry after delay(2)
  attempt 3 fails: dead-lettered with retry_count=3

Attempt counting and delay computation are pure so the schedule can be unit
tested without a queue or a clock.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

from hookline.config import RetrySettings

JITTER_FRACTION: Final[float] = 0.1


class RetryPolicy(BaseModel):
    """Backoff parameters. Routing rules may carry their own."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_seconds: float = Field(default=1.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    max_delay_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            base_seconds=settings.base_seconds,
            multiplier=settings.multiplier,
            max_attempts=settings.max_attempts,
            max_delay_seconds=settings.max_delay_seconds,
        )

    def base_delay(self, attempt: int) -> float:
        """Unjittered delay after the given failed attempt (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.base_seconds * self.multiplier ** (attempt - 1), self.max_delay_seconds)

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Jittered delay: base_delay * (1 ± U(0, 0.1)).

        Args:
            attempt: Failed attempts so far (1-based).
            rand: Uniform [0, 1) source, injectable for tests.
        """
        base = self.base_delay(attempt)
        jitter = (rand() * 2 - 1) * JITTER_FRACTION
        return max(0.0, base * (1 + jitter))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def schedule(self) -> list[float]:
        """Unjittered delay(n) for n = 1..max_attempts."""
        return [self.base_delay(n) for n in range(1, self.max_attempts + 1)]


def with_one_more_attempt(policy: RetryPolicy, attempts_so_far: int) -> RetryPolicy:
    """Policy allowing exactly one more attempt (operator retry)."""
    return policy.model_copy(update={"max_attempts": attempts_so_far + 1})
