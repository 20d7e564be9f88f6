"""SQLAlchemy engine creation and table DDL for SQL-backed stores.

The idempotency store, DLQ store and audit sink share one engine built from
HOOKLINE_DATABASE_URL. DDL is portable between PostgreSQL and SQLite so the
same stores run against an in-process SQLite database in tests. Schema
migrations are owned by the deployment, not by this module; ensure_schema
only creates missing tables.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class DatabaseConfigError(Exception):
    """Raised when a SQL-backed store is selected without a usable database URL."""


_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS idempotency_markers (
        idempotency_key TEXT PRIMARY KEY,
        expires_at DOUBLE PRECISION NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dlq_entries (
        id TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        source TEXT NOT NULL,
        stage TEXT NOT NULL,
        error_class TEXT NOT NULL,
        error_message TEXT NOT NULL,
        retry_count INTEGER NOT NULL,
        status TEXT NOT NULL,
        event_json TEXT NOT NULL,
        rule_id TEXT,
        note TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        transitions_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_dlq_entries_status ON dlq_entries (status)",
    """
    CREATE TABLE IF NOT EXISTS ingress_audit (
        record_id TEXT PRIMARY KEY,
        record_type TEXT NOT NULL,
        event_id TEXT,
        source TEXT,
        received_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_ingress_audit_event_id ON ingress_audit (event_id)",
    "CREATE INDEX IF NOT EXISTS ix_ingress_audit_source ON ingress_audit (source)",
    "CREATE INDEX IF NOT EXISTS ix_ingress_audit_received_at ON ingress_audit (received_at)",
)


def normalize_database_url(url: str) -> str:
    """Rewrite legacy postgres:// URLs to the SQLAlchemy dialect name."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def create_db_engine(url: str | None) -> Engine:
    """Create an engine for the SQL-backed stores.

    Args:
        url: SQLAlchemy database URL.

    Returns:
        Configured Engine.

    Raises:
        DatabaseConfigError: If url is empty.
    """
    if not url:
        raise DatabaseConfigError(
            "Database URL not configured. Set HOOKLINE_DATABASE_URL environment variable."
        )

    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads.
        kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
    else:
        engine = create_engine(url, pool_size=5, max_overflow=10, pool_pre_ping=True)

    logger.info("Created database engine for %s", engine.url.get_backend_name())
    return engine


def ensure_schema(engine: Engine) -> None:
    """Create the hookline tables and indexes if missing.

    Raises:
        DatabaseConfigError: If the DDL cannot be applied.
    """
    try:
        with engine.begin() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(text(statement))
    except SQLAlchemyError as e:
        raise DatabaseConfigError(f"Failed to create hookline tables: {e}") from e

