"""Idempotency marker stores.

Every backend exposes one atomic operation, ``claim(key, ttl_seconds)``: set
the marker if it is absent or expired and return True, otherwise return False.
Two concurrent claims for the same key never both return True.

Keys have the form ``{source}:{event_id}``. Backends:
- InMemoryIdempotencyStore: single process, lock plus monotonic expiry
- SqliteIdempotencyStore: single host, BEGIN IMMEDIATE claim
- SqlIdempotencyStore: shared SQL database, INSERT ... ON CONFLICT claim
- RedisIdempotencyStore: shared Redis, SET NX EX

Any backend failure raises IdempotencyStoreError. The guard treats that as a
transient failure rather than letting the delivery through.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    import redis
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "hookline:seen"


class IdempotencyStoreError(Exception):
    """Raised when the store is unavailable or corrupted."""


@runtime_checkable
class IdempotencyStore(Protocol):
    """Atomic check-and-set of idempotency markers."""

    def claim(self, key: str, ttl_seconds: int) -> bool:
        """Set the marker for key; return False if an unexpired marker exists."""
        ...


class InMemoryIdempotencyStore:
    """Process-local store. Expired markers are evicted lazily."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._expiry.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiry[key] = now + ttl_seconds
            if len(self._expiry) > 10_000:
                self._evict(now)
            return True

    def _evict(self, now: float) -> None:
        for stale in [k for k, exp in self._expiry.items() if exp <= now]:
            del self._expiry[stale]

    def __len__(self) -> int:
        return len(self._expiry)


class SqliteIdempotencyStore:
    """SQLite-backed store with thread-local connections.

    Creates the database and parent directories on first use. Each claim runs
    in a BEGIN IMMEDIATE transaction so the read and the write hold the
    database write lock together.
    """

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS idempotency_markers (
            idempotency_key TEXT PRIMARY KEY,
            expires_at REAL NOT NULL
        )
    """

    _SELECT_SQL = "SELECT expires_at FROM idempotency_markers WHERE idempotency_key = ?"

    _UPSERT_SQL = """
        INSERT OR REPLACE INTO idempotency_markers (idempotency_key, expires_at)
        VALUES (?, ?)
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time) -> None:
        self._db_path = db_path
        self._clock = clock
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._ensure_database()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path, check_same_thread=False, isolation_level=None, timeout=5.0
                )
                self._local.conn = conn
            except sqlite3.Error as e:
                raise IdempotencyStoreError(f"Failed to connect to idempotency store: {e}") from e
        return conn

    def _ensure_database(self) -> None:
        try:
            db_path = Path(self._db_path)
            if db_path.is_dir():
                raise IdempotencyStoreError(
                    f"Idempotency store path is a directory: {self._db_path}"
                )
            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self._db_path)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(self._CREATE_TABLE_SQL)
                conn.commit()
            finally:
                conn.close()

            logger.info("Initialized idempotency store at %s", self._db_path)
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to initialize idempotency store: {e}") from e
        except OSError as e:
            raise IdempotencyStoreError(f"Failed to create idempotency store directory: {e}") from e

    def claim(self, key: str, ttl_seconds: int) -> bool:
        conn = self._get_connection()
        now = self._clock()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(self._SELECT_SQL, (key,)).fetchone()
                if row is not None and row[0] > now:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute(self._UPSERT_SQL, (key, now + ttl_seconds))
                conn.execute("COMMIT")
                return True
            except sqlite3.Error:
                with contextlib.suppress(sqlite3.Error):
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to claim idempotency key: {e}") from e

    def close(self) -> None:
        """Close the thread-local connection if open."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
            self._local.conn = None


class SqlIdempotencyStore:
    """Shared SQL store (PostgreSQL in production).

    The claim is a single upsert that only overwrites an expired marker, so
    the database resolves concurrent claims.
    """

    _CLAIM_SQL = text(
        """
        INSERT INTO idempotency_markers (idempotency_key, expires_at)
        VALUES (:key, :expires_at)
        ON CONFLICT (idempotency_key)
        DO UPDATE SET expires_at = EXCLUDED.expires_at
        WHERE idempotency_markers.expires_at <= :now
        RETURNING idempotency_key
        """
    )

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self._engine = engine
        self._clock = clock

    def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    self._CLAIM_SQL,
                    {"key": key, "expires_at": now + ttl_seconds, "now": now},
                ).fetchone()
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Failed to claim idempotency key: {e}") from e
        return row is not None


class RedisIdempotencyStore:
    """Redis store using SET NX EX for atomic check-and-mark.

    Key pattern: ``hookline:seen:{source}:{event_id}``.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisIdempotencyStore:
        import redis as redis_lib

        return cls(redis_lib.from_url(url, decode_responses=True))

    def claim(self, key: str, ttl_seconds: int) -> bool:
        import redis as redis_lib

        try:
            was_set = self._client.set(f"{REDIS_KEY_PREFIX}:{key}", "1", nx=True, ex=ttl_seconds)
        except redis_lib.RedisError as e:
            raise IdempotencyStoreError(f"Redis unavailable for idempotency claim: {e}") from e
        return bool(was_set)
