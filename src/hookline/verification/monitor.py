"""Sliding-window signature failure monitor.

Counts verification failures per source. When a source reaches the threshold
inside the window, the notifier is called once; it is not called again for
that source until the window has fully drained.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecurityAlert:
    """Raised-alert payload handed to the notifier."""

    source: str
    failure_count: int
    window_seconds: int
    reasons: tuple[str, ...]


class SecurityAlertNotifier(Protocol):
    """Collaborator that delivers security alerts (pager, chat, etc.)."""

    def notify(self, alert: SecurityAlert) -> None: ...


class LoggingAlertNotifier:
    """Default notifier: writes the alert to the error log."""

    def notify(self, alert: SecurityAlert) -> None:
        logger.error(
            "Security alert: %d signature failures from %s in %ds (reasons=%s)",
            alert.failure_count,
            alert.source,
            alert.window_seconds,
            ",".join(sorted(set(alert.reasons))),
        )


class SecurityMonitor:
    """Per-source failure window with one alert per burst.

    Args:
        notifier: Receives alerts.
        threshold: Failures within the window that trigger an alert.
        window_seconds: Sliding window length.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        notifier: SecurityAlertNotifier | None = None,
        threshold: int = 3,
        window_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self._notifier = notifier or LoggingAlertNotifier()
        self._threshold = threshold
        self._window = window_seconds
        self._clock = clock
        self._failures: dict[str, deque[tuple[float, str]]] = {}
        self._alerted: dict[str, bool] = {}
        self._lock = threading.Lock()

    def record_failure(self, source: str, reason: str) -> SecurityAlert | None:
        """Record one failure; return the alert if this failure raised one."""
        now = self._clock()
        with self._lock:
            window = self._failures.setdefault(source, deque())
            window.append((now, reason))
            cutoff = now - self._window
            while window and window[0][0] <= cutoff:
                window.popleft()

            if len(window) == 1:
                self._alerted[source] = False

            if len(window) < self._threshold or self._alerted.get(source):
                return None

            self._alerted[source] = True
            alert = SecurityAlert(
                source=source,
                failure_count=len(window),
                window_seconds=self._window,
                reasons=tuple(r for _, r in window),
            )

        self._notifier.notify(alert)
        return alert

    def failure_count(self, source: str) -> int:
        now = self._clock()
        with self._lock:
            window = self._failures.get(source)
            if not window:
                return 0
            return sum(1 for ts, _ in window if ts > now - self._window)
