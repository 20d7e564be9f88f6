"""HTTP middleware."""

from hookline.api.middleware.rate_limit import RateLimitMiddleware
from hookline.api.middleware.request_id import RequestIdMiddleware

__all__ = ["RateLimitMiddleware", "RequestIdMiddleware"]
