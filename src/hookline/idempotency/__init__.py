"""Replay protection and idempotency markers."""

from hookline.idempotency.guard import GuardOutcome, ReplayGuard, idempotency_key
from hookline.idempotency.store import (
    IdempotencyStore,
    IdempotencyStoreError,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    SqliteIdempotencyStore,
    SqlIdempotencyStore,
)

__all__ = [
    "GuardOutcome",
    "IdempotencyStore",
    "IdempotencyStoreError",
    "InMemoryIdempotencyStore",
    "RedisIdempotencyStore",
    "ReplayGuard",
    "SqlIdempotencyStore",
    "SqliteIdempotencyStore",
    "idempotency_key",
]
