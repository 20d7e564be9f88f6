"""Tests for per-source token bucket rate limiting."""

from __future__ import annotations

import pytest

from hookline.config import load_settings
from hookline.rate_limit.limiter import (
    NANOSECONDS_PER_SECOND,
    RateLimitConfig,
    RateLimitConfigError,
    SourceRateLimiter,
    TokenBucket,
)


class FakeClockNs:
    def __init__(self) -> None:
        self.now = 0

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * NANOSECONDS_PER_SECOND)


class TestRateLimitConfig:
    """Configuration validation."""

    def test_capacity(self) -> None:
        """Capacity is rpm times the burst multiplier."""
        assert RateLimitConfig(rpm=60, burst_multiplier=3).capacity == 180

    @pytest.mark.parametrize("rpm,burst", [(0, 2), (-1, 2), (60, 0)])
    def test_invalid(self, rpm: int, burst: int) -> None:
        """Non-positive values are rejected."""
        with pytest.raises(RateLimitConfigError):
            RateLimitConfig(rpm=rpm, burst_multiplier=burst)

    def test_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """HOOKLINE_RATE_LIMIT_* variables flow into the config."""
        monkeypatch.setenv("HOOKLINE_RATE_LIMIT_RPM", "120")
        monkeypatch.setenv("HOOKLINE_RATE_LIMIT_BURST_MULTIPLIER", "1")
        config = RateLimitConfig.from_settings(load_settings())
        assert (config.rpm, config.capacity) == (120, 120)


class TestTokenBucket:
    """Bucket arithmetic on a fake clock."""

    def test_burst_then_refill(self) -> None:
        """A full bucket allows capacity requests, then refills over time."""
        clock = FakeClockNs()
        bucket = TokenBucket(3, 1.0, clock_ns=clock)

        assert [bucket.try_consume()[0] for _ in range(3)] == [True, True, True]
        allowed, wait, remaining = bucket.try_consume()
        assert not allowed
        assert wait == pytest.approx(1.0)
        assert remaining == 0

        clock.advance(1.0)
        assert bucket.try_consume()[0]

    def test_refill_caps_at_capacity(self) -> None:
        """Idle time never overfills the bucket."""
        clock = FakeClockNs()
        bucket = TokenBucket(2, 10.0, clock_ns=clock)
        clock.advance(60)
        results = [bucket.try_consume()[0] for _ in range(3)]
        assert results == [True, True, False]


class TestSourceRateLimiter:
    """One bucket per source."""

    def test_sources_are_independent(self) -> None:
        """Exhausting one source does not affect another."""
        limiter = SourceRateLimiter(
            RateLimitConfig(rpm=60, burst_multiplier=1), clock_ns=FakeClockNs()
        )
        for _ in range(60):
            assert limiter.check("stripe").allowed

        denied = limiter.check("stripe")
        assert not denied.allowed
        assert denied.retry_after_seconds == 1
        assert denied.limit_rpm == 60
        assert limiter.check("ghl").allowed

    def test_retry_after_rounds_up(self) -> None:
        """Fractional waits round up to whole seconds."""
        clock = FakeClockNs()
        limiter = SourceRateLimiter(RateLimitConfig(rpm=40, burst_multiplier=1), clock_ns=clock)
        for _ in range(40):
            limiter.check("twilio")
        assert limiter.check("twilio").retry_after_seconds == 2

    def test_reset(self) -> None:
        """reset gives every source a full bucket again."""
        limiter = SourceRateLimiter(
            RateLimitConfig(rpm=1, burst_multiplier=1), clock_ns=FakeClockNs()
        )
        assert limiter.check("ghl").allowed
        assert not limiter.check("ghl").allowed
        limiter.reset()
        assert limiter.check("ghl").allowed
