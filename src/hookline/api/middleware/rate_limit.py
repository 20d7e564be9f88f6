"""Per-source rate limiting for POST /webhooks/{source}.

Behavior:
1. Skip everything that is not a webhook delivery
2. Skip unknown sources (the route answers 404; no bucket is created)
3. Consume a token from the source's bucket
4. Denied: 429 RATE_LIMIT_EXCEEDED with Retry-After

Fails closed: limiter errors return 500 RATE_LIMITER_FAILED.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from hookline.api.error_model import make_error_response_no_request
from hookline.monitoring.counters import Counter, IngressCounters
from hookline.rate_limit.limiter import SourceRateLimiter

logger = logging.getLogger(__name__)

WEBHOOK_PREFIX = "/webhooks/"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per enabled source."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: SourceRateLimiter,
        sources: Collection[str],
        counters: IngressCounters | None = None,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter
        self._sources = frozenset(sources)
        self._counters = counters

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        if request.method != "POST" or not path.startswith(WEBHOOK_PREFIX):
            return await call_next(request)

        source = path[len(WEBHOOK_PREFIX) :].strip("/")
        if source not in self._sources:
            return await call_next(request)

        request_id: str | None = getattr(request.state, "request_id", None)
        try:
            decision = self._limiter.check(source)
        except Exception:
            logger.exception(
                "Rate limiter internal error for source=%s",
                source,
                extra={"request_id": request_id},
            )
            return make_error_response_no_request(
                code="RATE_LIMITER_FAILED",
                message="Rate limiter internal error",
                http_status=500,
                request_id=request_id,
            )

        if decision.allowed:
            return await call_next(request)

        retry_after = decision.retry_after_seconds or 1
        logger.info(
            "Rate limit exceeded: source=%s limit=%d retry_after=%d",
            source,
            decision.limit_rpm,
            retry_after,
            extra={"request_id": request_id},
        )
        if self._counters is not None:
            self._counters.increment(source, Counter.RATE_LIMITED)

        return make_error_response_no_request(
            code="RATE_LIMIT_EXCEEDED",
            message="Rate limit exceeded",
            http_status=429,
            request_id=request_id,
            details={"limit_rpm": decision.limit_rpm, "retry_after_seconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
