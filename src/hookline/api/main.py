"""hookline FastAPI application factory.

This module provides the create_app() factory for bootstrapping the ingress API.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from hookline.api.errors import register_exception_handlers
from hookline.api.middleware.rate_limit import RateLimitMiddleware
from hookline.api.middleware.request_id import RequestIdMiddleware
from hookline.api.routes.counters import router as counters_router
from hookline.api.routes.health import HOOKLINE_VERSION
from hookline.api.routes.health import router as health_router
from hookline.api.routes.operator import router as operator_router
from hookline.api.routes.webhooks import router as webhooks_router
from hookline.config import Settings, load_settings
from hookline.observability.tracing import (
    configure_tracing,
    instrument_fastapi,
    instrument_httpx,
)
from hookline.pipeline.factory import build_components
from hookline.pipeline.ingress import IngressPipeline
from hookline.rate_limit.limiter import RateLimitConfig, SourceRateLimiter
from hookline.retry.worker import RetryWorker

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    pipeline: IngressPipeline | None = None,
    rate_limiter: SourceRateLimiter | None = None,
    run_worker: bool = True,
) -> FastAPI:
    """Create and configure the hookline FastAPI application.

    This factory:
    - Builds the pipeline from settings unless one is injected
    - Registers middleware (request id outermost, then per-source rate limit)
    - Registers the structured error handlers
    - Mounts health, webhook, operator and counters routers
    - Starts and stops the retry worker with the app lifespan

    Args:
        settings: Process settings. If None, read from HOOKLINE_* variables.
        pipeline: Pre-built pipeline for testing. Its HTTP client and engine
            stay owned by the caller.
        rate_limiter: Optional SourceRateLimiter for testing.
        run_worker: Start the retry worker on startup.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = load_settings()

    http_client: httpx.AsyncClient | None = None
    engine = None
    if pipeline is None:
        components = build_components(settings)
        pipeline = components.pipeline
        http_client = components.http_client
        engine = components.engine

    if rate_limiter is None:
        rate_limiter = SourceRateLimiter(RateLimitConfig.from_settings(settings))

    worker = RetryWorker.from_settings(pipeline.queue, pipeline.process_retry, settings.retry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if run_worker:
            await worker.start()
        try:
            yield
        finally:
            await worker.stop()
            await pipeline.drain()
            pipeline.park_pending()
            await pipeline.aclose()
            if http_client is not None:
                await http_client.aclose()
            if engine is not None:
                engine.dispose()
            logger.info("hookline stopped")

    app = FastAPI(
        title="hookline",
        description="Signed webhook ingress, routing and retry pipeline",
        version=HOOKLINE_VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.retry_worker = worker
    app.state.rate_limiter = rate_limiter

    configure_tracing()
    instrument_httpx()

    # Last added runs first.
    app.add_middleware(
        RateLimitMiddleware,
        limiter=rate_limiter,
        sources=list(pipeline.sources),
        counters=pipeline.counters,
    )
    app.add_middleware(RequestIdMiddleware)

    instrument_fastapi(app)

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(operator_router)
    app.include_router(counters_router)

    return app
