"""Due-time ordered retry queue.

Enqueue and dequeue are the only operations that need mutual exclusion;
both run under one lock. Items become visible to ``pop_due`` once their due
time has passed on the injected monotonic clock.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from hookline.errors import Stage
from hookline.models.events import CanonicalEvent
from hookline.retry.policy import RetryPolicy
from hookline.retry.state import RetryState


@dataclass
class RetryItem:
    """One pending re-attempt.

    Attributes:
        event: Event being retried (exclusively owned by whoever holds the item).
        resume_stage: Stage processing restarts at.
        state: Retry state after the last failure.
        policy: Policy in force for this event.
        dlq_entry_id: Set when an operator re-enqueued a DLQ entry.
        rule_id: Rule matched by the failed attempt, if routing was reached.
    """

    event: CanonicalEvent
    resume_stage: Stage
    state: RetryState
    policy: RetryPolicy
    dlq_entry_id: str | None = None
    rule_id: str | None = None


class RetryQueue:
    """Min-heap keyed by due time, FIFO among equal due times."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, RetryItem]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def push(self, item: RetryItem, delay_seconds: float = 0.0) -> float:
        """Schedule item; returns its due time."""
        due = self._clock() + max(0.0, delay_seconds)
        with self._lock:
            heapq.heappush(self._heap, (due, next(self._seq), item))
        return due

    def pop_due(self, limit: int | None = None) -> list[RetryItem]:
        """Remove and return items whose due time has passed."""
        now = self._clock()
        ready: list[RetryItem] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                if limit is not None and len(ready) >= limit:
                    break
                ready.append(heapq.heappop(self._heap)[2])
        return ready

    def next_due_in(self) -> float | None:
        """Seconds until the earliest item is due, or None if empty."""
        with self._lock:
            if not self._heap:
                return None
            return max(0.0, self._heap[0][0] - self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

    def pop_all(self) -> list[RetryItem]:
        """Remove and return every item, due or not, in due order."""
        with self._lock:
            items = [entry[2] for entry in sorted(self._heap)]
            self._heap.clear()
        return items
