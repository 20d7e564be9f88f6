"""Per-source token bucket rate limiting for inbound webhooks.

Each enabled source gets its own bucket:
- capacity = rpm * burst_multiplier
- refill rate = rpm / 60 tokens per second

Environment variables:
    HOOKLINE_RATE_LIMIT_RPM: Requests per minute per source (default: 600)
    HOOKLINE_RATE_LIMIT_BURST_MULTIPLIER: Burst multiplier (default: 2)

The bucket is also used by the retry worker to cap outbound dispatch rate.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

from hookline.config import DEFAULT_BURST_MULTIPLIER, DEFAULT_RATE_LIMIT_RPM, Settings

NANOSECONDS_PER_SECOND: Final[int] = 1_000_000_000
SECONDS_PER_MINUTE: Final[int] = 60


class RateLimitConfigError(Exception):
    """Raised when rate limit configuration is invalid."""


@dataclass(frozen=True)
class RateLimitConfig:
    """Inbound rate limit configuration.

    Attributes:
        rpm: Requests per minute per source.
        burst_multiplier: Bucket capacity as a multiple of rpm.
    """

    rpm: int = DEFAULT_RATE_LIMIT_RPM
    burst_multiplier: int = DEFAULT_BURST_MULTIPLIER

    def __post_init__(self) -> None:
        if self.rpm <= 0:
            raise RateLimitConfigError(f"rpm must be positive, got {self.rpm}")
        if self.burst_multiplier <= 0:
            raise RateLimitConfigError(
                f"burst_multiplier must be positive, got {self.burst_multiplier}"
            )

    @property
    def capacity(self) -> int:
        return self.rpm * self.burst_multiplier

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimitConfig:
        return cls(
            rpm=settings.rate_limit_rpm,
            burst_multiplier=settings.rate_limit_burst_multiplier,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        retry_after_seconds: Whole seconds until a token is available (None if allowed).
        remaining_tokens: Tokens left after this request.
        limit_rpm: Configured rpm.
    """

    allowed: bool
    retry_after_seconds: int | None
    remaining_tokens: int
    limit_rpm: int


class TokenBucket:
    """Token bucket on integer nanoseconds of a monotonic clock. Thread-safe."""

    def __init__(
        self,
        capacity: int,
        refill_rate_per_sec: float,
        clock_ns: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        self._capacity = capacity
        self._refill_rate_ns = int(refill_rate_per_sec * NANOSECONDS_PER_SECOND)
        self._tokens_ns = capacity * NANOSECONDS_PER_SECOND
        self._clock_ns = clock_ns
        self._last_refill_ns = clock_ns()
        self._lock = threading.Lock()

    def try_consume(self, cost: int = 1) -> tuple[bool, float, int]:
        """Try to take ``cost`` tokens.

        Returns:
            (allowed, wait_seconds, remaining_tokens). wait_seconds is 0.0 when
            allowed, otherwise the time until enough tokens have refilled.
        """
        cost_ns = cost * NANOSECONDS_PER_SECOND

        with self._lock:
            now_ns = self._clock_ns()
            elapsed_ns = now_ns - self._last_refill_ns

            if elapsed_ns > 0 and self._refill_rate_ns > 0:
                refill_ns = (elapsed_ns * self._refill_rate_ns) // NANOSECONDS_PER_SECOND
                self._tokens_ns = min(
                    self._capacity * NANOSECONDS_PER_SECOND,
                    self._tokens_ns + refill_ns,
                )
                self._last_refill_ns = now_ns

            if self._tokens_ns >= cost_ns:
                self._tokens_ns -= cost_ns
                return (True, 0.0, self._tokens_ns // NANOSECONDS_PER_SECOND)

            deficit_ns = cost_ns - self._tokens_ns
            if self._refill_rate_ns > 0:
                wait = deficit_ns / self._refill_rate_ns
            else:
                wait = float(SECONDS_PER_MINUTE)
            return (False, wait, self._tokens_ns // NANOSECONDS_PER_SECOND)


class SourceRateLimiter:
    """One token bucket per source, created lazily."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock_ns: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._clock_ns = clock_ns
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _bucket(self, source: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(source)
            if bucket is None:
                bucket = TokenBucket(
                    self._config.capacity,
                    self._config.rpm / SECONDS_PER_MINUTE,
                    clock_ns=self._clock_ns,
                )
                self._buckets[source] = bucket
            return bucket

    def check(self, source: str) -> RateLimitDecision:
        """Consume one token for ``source``."""
        allowed, wait, remaining = self._bucket(source).try_consume(1)
        retry_after = None
        if not allowed:
            retry_after = max(1, int(wait) + (0 if wait == int(wait) else 1))
        return RateLimitDecision(
            allowed=allowed,
            retry_after_seconds=retry_after,
            remaining_tokens=remaining,
            limit_rpm=self._config.rpm,
        )

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
