"""Replay and idempotency guard.

Runs after signature verification. The freshness check runs first so a
stale replay never consumes an idempotency marker.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from hookline.errors import ReplayRejectedError, StoreUnavailableError
from hookline.idempotency.store import IdempotencyStore, IdempotencyStoreError
from hookline.models.events import utc_now

logger = logging.getLogger(__name__)


class GuardOutcome(str, Enum):
    """Result of the guard. Duplicate is a value, not an error."""

    FRESH = "fresh"
    DUPLICATE = "duplicate"


def idempotency_key(source: str, event_id: str) -> str:
    return f"{source}:{event_id}"


class ReplayGuard:
    """Freshness check plus atomic idempotency claim.

    Args:
        store: Backend providing atomic claim.
        ttl_seconds: Duplicate window.
        freshness_tolerance_seconds: Allowed skew of a self-reported event
            timestamp from now. 0 disables the check.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        ttl_seconds: int = 86400,
        freshness_tolerance_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._tolerance = freshness_tolerance_seconds
        self._clock = clock

    def check_freshness(self, source: str, occurred_at: datetime | None) -> None:
        """Raise ReplayRejectedError if occurred_at is outside tolerance."""
        if occurred_at is None or self._tolerance <= 0:
            return
        skew = abs((self._clock() - occurred_at).total_seconds())
        if skew > self._tolerance:
            raise ReplayRejectedError(source, skew, self._tolerance)

    def claim(self, source: str, event_id: str) -> GuardOutcome:
        """Atomically mark (source, event_id) as seen.

        Raises:
            StoreUnavailableError: If the store cannot answer. Transient.
        """
        key = idempotency_key(source, event_id)
        try:
            claimed = self._store.claim(key, self._ttl)
        except IdempotencyStoreError as e:
            logger.warning("Idempotency store unavailable for %s: %s", key, e)
            raise StoreUnavailableError(str(e)) from e

        if not claimed:
            logger.info("Duplicate delivery %s", key)
            return GuardOutcome.DUPLICATE
        return GuardOutcome.FRESH

    def check(
        self, source: str, event_id: str, occurred_at: datetime | None = None
    ) -> GuardOutcome:
        """Freshness check, then claim."""
        self.check_freshness(source, occurred_at)
        return self.claim(source, event_id)
