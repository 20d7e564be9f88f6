"""Ingress counters.

Counters are exposed for an external alerting collaborator; no alert policy
is computed here. ``snapshot()`` returns plain JSON-safe data.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable
from enum import Enum
from typing import Any


class Counter(str, Enum):
    RECEIVED = "received"
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    PROCESSED = "processed"
    REJECTED_SIGNATURE = "rejected_signature"
    REJECTED_REPLAY = "rejected_replay"
    REJECTED_SCHEMA = "rejected_schema"
    RATE_LIMITED = "rate_limited"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_PERMANENT = "failed_permanent"
    RETRY_SCHEDULED = "retry_scheduled"
    NO_MATCH = "no_match"
    DEAD_LETTERED = "dead_lettered"
    AUDIT_WRITE_FAILED = "audit_write_failed"


class IngressCounters:
    """Thread-safe per-source counters plus a sliding DLQ-growth window.

    Args:
        dlq_interval_seconds: Window for ``dlq_new_in_interval``.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        dlq_interval_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = dlq_interval_seconds
        self._clock = clock
        self._counts: dict[str, dict[Counter, int]] = defaultdict(lambda: defaultdict(int))
        self._dlq_times: deque[float] = deque()
        self._lock = threading.Lock()

    def increment(self, source: str, counter: Counter, amount: int = 1) -> None:
        with self._lock:
            self._counts[source][counter] += amount
            if counter == Counter.DEAD_LETTERED:
                now = self._clock()
                for _ in range(amount):
                    self._dlq_times.append(now)
                self._prune(now)

    def get(self, source: str, counter: Counter) -> int:
        with self._lock:
            return self._counts.get(source, {}).get(counter, 0)

    def dlq_new_in_interval(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._dlq_times)

    def _prune(self, now: float) -> None:
        # Caller holds the lock.
        cutoff = now - self._interval
        while self._dlq_times and self._dlq_times[0] <= cutoff:
            self._dlq_times.popleft()

    def error_rate(self, source: str) -> float:
        """Failed and rejected deliveries over received, 0.0 when idle."""
        with self._lock:
            counts = self._counts.get(source, {})
            received = counts.get(Counter.RECEIVED, 0)
            if received == 0:
                return 0.0
            errors = sum(
                counts.get(c, 0)
                for c in (
                    Counter.REJECTED_SIGNATURE,
                    Counter.REJECTED_SCHEMA,
                    Counter.FAILED_TRANSIENT,
                    Counter.FAILED_PERMANENT,
                )
            )
            return errors / received

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            sources = {
                source: {c.value: counts.get(c, 0) for c in Counter}
                for source, counts in sorted(self._counts.items())
            }
        return {
            "sources": sources,
            "error_rate": {source: self.error_rate(source) for source in sources},
            "dlq_new_in_interval": self.dlq_new_in_interval(),
            "dlq_interval_seconds": self._interval,
        }
