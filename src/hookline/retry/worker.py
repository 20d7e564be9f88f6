"""Background retry worker.

Polls the retry queue for due items and hands each one to the pipeline's
processor. Concurrency is bounded by a semaphore and dispatch is capped by a
token bucket, both independent of inbound request handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from hookline.config import RetrySettings
from hookline.rate_limit.limiter import TokenBucket
from hookline.retry.queue import RetryItem, RetryQueue

logger = logging.getLogger(__name__)

RetryProcessor = Callable[[RetryItem], Awaitable[None]]

DEFAULT_POLL_INTERVAL_SECONDS = 0.2


class RetryWorker:
    """Rate-limited pool draining the retry queue.

    Args:
        queue: Queue to drain.
        processor: Coroutine run for each due item.
        concurrency: Max attempts in flight.
        rate_per_second: Max attempts started per second.
        poll_interval_seconds: Upper bound on idle sleep between polls.
    """

    def __init__(
        self,
        queue: RetryQueue,
        processor: RetryProcessor,
        concurrency: int = 4,
        rate_per_second: int = 10,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._bucket = TokenBucket(rate_per_second, float(rate_per_second))
        self._poll_interval = poll_interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls, queue: RetryQueue, processor: RetryProcessor, settings: RetrySettings
    ) -> RetryWorker:
        return cls(
            queue,
            processor,
            concurrency=settings.concurrency,
            rate_per_second=settings.rate_per_second,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Retry worker started (concurrency=%d, poll_interval=%.2fs)",
            self._concurrency,
            self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop polling and wait for in-flight attempts to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Retry worker stopped")

    async def drain(self) -> int:
        """Run every item that is due now and wait for them. Returns the count."""
        items = self._queue.pop_due()
        for item in items:
            await self._dispatch(item)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        return len(items)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                free = self._concurrency - len(self._inflight)
                items = self._queue.pop_due(limit=free) if free > 0 else []
                for item in items:
                    await self._dispatch(item)
            except Exception as e:
                logger.error("Error in retry poll loop: %s", e, exc_info=True)

            next_due = self._queue.next_due_in()
            if next_due is None:
                next_due = self._poll_interval
            await asyncio.sleep(min(next_due, self._poll_interval))

    async def _dispatch(self, item: RetryItem) -> None:
        allowed, wait, _ = self._bucket.try_consume(1)
        while not allowed:
            await asyncio.sleep(wait)
            allowed, wait, _ = self._bucket.try_consume(1)

        await self._semaphore.acquire()
        task = asyncio.create_task(self._run(item))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, item: RetryItem) -> None:
        try:
            await self._processor(item)
        except Exception as e:
            logger.error(
                "Retry attempt for %s raised unexpectedly: %s",
                item.event.idempotency_key,
                e,
                exc_info=True,
            )
        finally:
            self._semaphore.release()
