"""Inbound rate limiting."""

from hookline.rate_limit.limiter import (
    RateLimitConfig,
    RateLimitConfigError,
    RateLimitDecision,
    SourceRateLimiter,
    TokenBucket,
)

__all__ = [
    "RateLimitConfig",
    "RateLimitConfigError",
    "RateLimitDecision",
    "SourceRateLimiter",
    "TokenBucket",
]
