"""Append-only audit record sinks.

Design requirements:
- Append-only: never truncate/overwrite
- Fail closed: any IO failure raises AuditSinkError
- Deterministic: consistent JSON serialization (sorted keys, no extra whitespace)

Records are indexed by event_id, source and received_at. Every sink can be
read back with ``find`` so compliance queries and replay tooling share one
access path.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class AuditSinkError(Exception):
    """Raised when an audit record cannot be written or read."""


def serialize_record(record: dict[str, Any]) -> str:
    try:
        return json.dumps(record, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise AuditSinkError(f"Failed to serialize audit record: {e}") from e


def _matches(record: dict[str, Any], filters: dict[str, str | None]) -> bool:
    return all(value is None or record.get(key) == value for key, value in filters.items())


@runtime_checkable
class AuditSink(Protocol):
    """Append-only record sink."""

    def emit(self, record: dict[str, Any]) -> None:
        """Append one record.

        Raises:
            AuditSinkError: If emission fails for any reason.
        """
        ...

    def find(
        self,
        event_id: str | None = None,
        source: str | None = None,
        record_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Records matching every given filter, in append order."""
        ...


class JsonlFileAuditSink:
    """Append-only JSONL file: one sorted-key JSON object per line."""

    def __init__(self, file_path: str | Path) -> None:
        self._file_path = Path(file_path)
        self._lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _ensure_parent_directory(self) -> None:
        parent = self._file_path.parent
        if not parent.exists():
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise AuditSinkError(f"Failed to create audit log directory {parent}: {e}") from e

    def emit(self, record: dict[str, Any]) -> None:
        line = serialize_record(record) + "\n"
        self._ensure_parent_directory()
        try:
            with self._lock, open(self._file_path, mode="a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise AuditSinkError(f"Failed to write audit record to {self._file_path}: {e}") from e

    def _iter_records(self) -> Iterator[dict[str, Any]]:
        if not self._file_path.exists():
            return
        try:
            with open(self._file_path, encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError as e:
                        raise AuditSinkError(
                            f"Corrupt audit record at {self._file_path}:{line_no}: {e}"
                        ) from e
        except OSError as e:
            raise AuditSinkError(f"Failed to read audit log {self._file_path}: {e}") from e

    def find(
        self,
        event_id: str | None = None,
        source: str | None = None,
        record_type: str | None = None,
    ) -> list[dict[str, Any]]:
        filters = {"event_id": event_id, "source": source, "record_type": record_type}
        return [r for r in self._iter_records() if _matches(r, filters)]


class InMemoryAuditSink:
    """In-memory sink for tests. Records round-trip through JSON on emit."""

    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, record: dict[str, Any]) -> None:
        line = serialize_record(record)
        with self._lock:
            self._records.append(json.loads(line))

    @property
    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._records)

    def find(
        self,
        event_id: str | None = None,
        source: str | None = None,
        record_type: str | None = None,
    ) -> list[dict[str, Any]]:
        filters = {"event_id": event_id, "source": source, "record_type": record_type}
        return [r for r in self.records if _matches(r, filters)]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class SqlAuditSink:
    """Audit records in the ``ingress_audit`` table. INSERT only."""

    _INSERT_SQL = text(
        """
        INSERT INTO ingress_audit
        (record_id, record_type, event_id, source, received_at, record_json)
        VALUES
        (:record_id, :record_type, :event_id, :source, :received_at, :record_json)
        """
    )

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def emit(self, record: dict[str, Any]) -> None:
        record_id = record.get("record_id")
        record_type = record.get("record_type")
        received_at = record.get("received_at") or record.get("recorded_at")
        if not all([record_id, record_type, received_at]):
            raise AuditSinkError(
                "Audit record missing required fields: record_id, record_type, received_at"
            )

        params = {
            "record_id": record_id,
            "record_type": record_type,
            "event_id": record.get("event_id"),
            "source": record.get("source"),
            "received_at": received_at,
            "record_json": serialize_record(record),
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(self._INSERT_SQL, params)
        except SQLAlchemyError as e:
            raise AuditSinkError(f"Failed to emit audit record: {e}") from e

    def find(
        self,
        event_id: str | None = None,
        source: str | None = None,
        record_type: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        for column, value in (
            ("event_id", event_id),
            ("source", source),
            ("record_type", record_type),
        ):
            if value is not None:
                clauses.append(f"{column} = :{column}")
                params[column] = value

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = text(f"SELECT record_json FROM ingress_audit {where} ORDER BY received_at")
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except SQLAlchemyError as e:
            raise AuditSinkError(f"Failed to query audit records: {e}") from e
        return [json.loads(row.record_json) for row in rows]
