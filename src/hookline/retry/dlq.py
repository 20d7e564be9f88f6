"""Dead letter queue.

Entries are created only by the retry path, after a permanent failure or
after the last allowed attempt. They change only through operator actions
(retry, resolve, discard) and the outcome of an operator retry.

Status machine:
    pending  -> retried | resolved | discarded
    retried  -> pending | resolved
    resolved, discarded: terminal
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from hookline.audit.log import AuditLog
from hookline.errors import ErrorClass, PipelineError, Stage
from hookline.models.events import CanonicalEvent, isoformat_z, utc_now
from hookline.monitoring.counters import Counter, IngressCounters

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class DLQStatus(str, Enum):
    PENDING = "pending"
    RETRIED = "retried"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


ALLOWED_TRANSITIONS: dict[DLQStatus, frozenset[DLQStatus]] = {
    DLQStatus.PENDING: frozenset({DLQStatus.RETRIED, DLQStatus.RESOLVED, DLQStatus.DISCARDED}),
    DLQStatus.RETRIED: frozenset({DLQStatus.PENDING, DLQStatus.RESOLVED}),
    DLQStatus.RESOLVED: frozenset(),
    DLQStatus.DISCARDED: frozenset(),
}


class DeadLetterStoreError(Exception):
    """Raised when the DLQ store cannot be read or written."""


class DLQEntryNotFoundError(KeyError):
    """Raised when an entry id does not exist."""


class InvalidDLQTransition(Exception):
    """Raised for a status change the state machine does not allow."""

    def __init__(self, entry_id: str, current: DLQStatus, requested: DLQStatus) -> None:
        super().__init__(
            f"DLQ entry {entry_id} cannot move from {current.value} to {requested.value}"
        )
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


@dataclass(frozen=True)
class DLQEntry:
    """A parked event awaiting operator disposition.

    Attributes:
        id: Internal id.
        event: The canonical event, including ``original`` for replay.
        stage: Stage of the last failure.
        error_class: Class of the last failure.
        error_message: describe() of the last failure.
        retry_count: Failed attempts when parked.
        status: Current status.
        rule_id: Matched rule, when routing got that far.
        transitions: [{"status", "at", "note"}] in order, creation included.
    """

    id: str
    event: CanonicalEvent
    stage: Stage
    error_class: ErrorClass
    error_message: str
    retry_count: int
    status: DLQStatus = DLQStatus.PENDING
    rule_id: str | None = None
    note: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    transitions: tuple[dict[str, Any], ...] = ()

    @property
    def event_id(self) -> str:
        return self.event.event_id

    @property
    def source(self) -> str:
        return self.event.source

    def to_dict(self, include_event: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "event_id": self.event_id,
            "source": self.source,
            "stage": self.stage.value,
            "error_class": self.error_class.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "rule_id": self.rule_id,
            "note": self.note,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
            "transitions": list(self.transitions),
        }
        if include_event:
            data["event"] = self.event.to_audit_dict()
        return data


def new_entry(
    event: CanonicalEvent,
    error: PipelineError,
    retry_count: int,
    rule_id: str | None = None,
    now: datetime | None = None,
) -> DLQEntry:
    now = now or utc_now()
    return DLQEntry(
        id=str(uuid.uuid4()),
        event=event,
        stage=error.stage,
        error_class=error.error_class,
        error_message=error.describe(),
        retry_count=retry_count,
        rule_id=rule_id,
        created_at=now,
        updated_at=now,
        transitions=({"status": DLQStatus.PENDING.value, "at": isoformat_z(now), "note": None},),
    )


def transition(
    entry: DLQEntry,
    status: DLQStatus,
    note: str | None = None,
    now: datetime | None = None,
    **changes: Any,
) -> DLQEntry:
    """Apply a status change.

    Raises:
        InvalidDLQTransition: If the state machine forbids it.
    """
    if status not in ALLOWED_TRANSITIONS[entry.status]:
        raise InvalidDLQTransition(entry.id, entry.status, status)
    now = now or utc_now()
    return replace(
        entry,
        status=status,
        note=note if note is not None else entry.note,
        updated_at=now,
        transitions=(
            *entry.transitions,
            {"status": status.value, "at": isoformat_z(now), "note": note},
        ),
        **changes,
    )


class DeadLetterStore(Protocol):
    def add(self, entry: DLQEntry) -> None: ...

    def get(self, entry_id: str) -> DLQEntry | None: ...

    def update(self, entry: DLQEntry) -> None: ...

    def list(self, status: DLQStatus | None = None, limit: int = 100) -> list[DLQEntry]: ...


class InMemoryDeadLetterStore:
    """Process-local store, insertion ordered."""

    def __init__(self) -> None:
        self._entries: dict[str, DLQEntry] = {}
        self._lock = threading.Lock()

    def add(self, entry: DLQEntry) -> None:
        with self._lock:
            self._entries[entry.id] = entry

    def get(self, entry_id: str) -> DLQEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def update(self, entry: DLQEntry) -> None:
        with self._lock:
            if entry.id not in self._entries:
                raise DLQEntryNotFoundError(entry.id)
            self._entries[entry.id] = entry

    def list(self, status: DLQStatus | None = None, limit: int = 100) -> list[DLQEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if status is None or e.status == status]
        return entries[:limit]

    def __len__(self) -> int:
        return len(self._entries)


class SqlDeadLetterStore:
    """DLQ entries in the ``dlq_entries`` table."""

    _INSERT_SQL = text(
        """
        INSERT INTO dlq_entries
        (id, event_id, source, stage, error_class, error_message, retry_count, status,
         event_json, rule_id, note, created_at, updated_at, transitions_json)
        VALUES
        (:id, :event_id, :source, :stage, :error_class, :error_message, :retry_count, :status,
         :event_json, :rule_id, :note, :created_at, :updated_at, :transitions_json)
        """
    )

    _UPDATE_SQL = text(
        """
        UPDATE dlq_entries
        SET status = :status, retry_count = :retry_count, error_message = :error_message,
            stage = :stage, error_class = :error_class, note = :note,
            event_json = :event_json, updated_at = :updated_at,
            transitions_json = :transitions_json
        WHERE id = :id
        """
    )

    _SELECT_COLUMNS = (
        "id, stage, error_class, error_message, retry_count, status, event_json, rule_id, "
        "note, created_at, updated_at, transitions_json"
    )

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @staticmethod
    def _params(entry: DLQEntry) -> dict[str, Any]:
        return {
            "id": entry.id,
            "event_id": entry.event_id,
            "source": entry.source,
            "stage": entry.stage.value,
            "error_class": entry.error_class.value,
            "error_message": entry.error_message,
            "retry_count": entry.retry_count,
            "status": entry.status.value,
            "event_json": json.dumps(entry.event.to_audit_dict(), sort_keys=True),
            "rule_id": entry.rule_id,
            "note": entry.note,
            "created_at": isoformat_z(entry.created_at),
            "updated_at": isoformat_z(entry.updated_at),
            "transitions_json": json.dumps(list(entry.transitions), sort_keys=True),
        }

    @staticmethod
    def _from_row(row: Any) -> DLQEntry:
        return DLQEntry(
            id=row.id,
            event=CanonicalEvent.from_audit_dict(json.loads(row.event_json)),
            stage=Stage(row.stage),
            error_class=ErrorClass(row.error_class),
            error_message=row.error_message,
            retry_count=row.retry_count,
            status=DLQStatus(row.status),
            rule_id=row.rule_id,
            note=row.note,
            created_at=datetime.fromisoformat(row.created_at.replace("Z", "+00:00")),
            updated_at=datetime.fromisoformat(row.updated_at.replace("Z", "+00:00")),
            transitions=tuple(json.loads(row.transitions_json)),
        )

    def add(self, entry: DLQEntry) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(self._INSERT_SQL, self._params(entry))
        except SQLAlchemyError as e:
            raise DeadLetterStoreError(f"Failed to add DLQ entry: {e}") from e

    def get(self, entry_id: str) -> DLQEntry | None:
        query = text(f"SELECT {self._SELECT_COLUMNS} FROM dlq_entries WHERE id = :id")
        try:
            with self._engine.connect() as conn:
                row = conn.execute(query, {"id": entry_id}).fetchone()
        except SQLAlchemyError as e:
            raise DeadLetterStoreError(f"Failed to read DLQ entry: {e}") from e
        return self._from_row(row) if row is not None else None

    def update(self, entry: DLQEntry) -> None:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(self._UPDATE_SQL, self._params(entry))
        except SQLAlchemyError as e:
            raise DeadLetterStoreError(f"Failed to update DLQ entry: {e}") from e
        if result.rowcount == 0:
            raise DLQEntryNotFoundError(entry.id)

    def list(self, status: DLQStatus | None = None, limit: int = 100) -> list[DLQEntry]:
        where = "WHERE status = :status" if status is not None else ""
        query = text(
            f"SELECT {self._SELECT_COLUMNS} FROM dlq_entries {where} "
            "ORDER BY created_at LIMIT :limit"
        )
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            params["status"] = status.value
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except SQLAlchemyError as e:
            raise DeadLetterStoreError(f"Failed to list DLQ entries: {e}") from e
        return [self._from_row(row) for row in rows]


Requeue = Callable[[DLQEntry], None]


class DeadLetterService:
    """DLQ operations with audit records for every transition.

    Args:
        store: Entry storage.
        audit: Audit log for operator and dead-letter records.
        counters: Ingress counters (dead_lettered).
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: DeadLetterStore,
        audit: AuditLog,
        counters: IngressCounters | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._counters = counters
        self._clock = clock
        self._requeue: Requeue | None = None
        self._lock = threading.Lock()

    def bind_requeue(self, requeue: Requeue) -> None:
        """Attach the callable that re-enqueues an entry for one more attempt."""
        self._requeue = requeue

    @property
    def store(self) -> DeadLetterStore:
        return self._store

    def dead_letter(
        self,
        event: CanonicalEvent,
        error: PipelineError,
        retry_count: int,
        rule_id: str | None = None,
    ) -> DLQEntry:
        """Park a failed event as a pending entry."""
        entry = new_entry(event, error, retry_count, rule_id=rule_id, now=self._clock())
        self._store.add(entry)
        if self._counters is not None:
            self._counters.increment(event.source, Counter.DEAD_LETTERED)
        logger.error(
            "Dead-lettered %s after %d attempt(s) at %s (%s): %s",
            event.idempotency_key,
            retry_count,
            error.stage.value,
            error.error_class.value,
            error.message,
        )
        return entry

    def get(self, entry_id: str) -> DLQEntry:
        entry = self._store.get(entry_id)
        if entry is None:
            raise DLQEntryNotFoundError(entry_id)
        return entry

    def list(self, status: DLQStatus | None = None, limit: int = 100) -> list[DLQEntry]:
        return self._store.list(status=status, limit=limit)

    def _apply(
        self,
        entry_id: str,
        status: DLQStatus,
        action: str,
        note: str | None,
        actor: str | None,
        **changes: Any,
    ) -> DLQEntry:
        with self._lock:
            entry = self.get(entry_id)
            updated = transition(entry, status, note=note, now=self._clock(), **changes)
            self._store.update(updated)
        self._audit.record_operator(
            action=action,
            target=entry_id,
            actor=actor,
            event_id=updated.event_id,
            source=updated.source,
            details={
                "from": entry.status.value,
                "to": updated.status.value,
                "note": note,
            },
        )
        return updated

    def retry(self, entry_id: str, actor: str | None = None) -> DLQEntry:
        """Re-enqueue an entry for exactly one more attempt.

        Raises:
            DLQEntryNotFoundError: Unknown id.
            InvalidDLQTransition: Entry is not pending.
            RuntimeError: No requeue target bound.
        """
        if self._requeue is None:
            raise RuntimeError("DLQ retry is not wired to a retry queue")
        updated = self._apply(entry_id, DLQStatus.RETRIED, "dlq.retry", None, actor)
        self._requeue(updated)
        return updated

    def resolve(self, entry_id: str, note: str | None = None, actor: str | None = None) -> DLQEntry:
        """Mark an entry handled out of band."""
        return self._apply(entry_id, DLQStatus.RESOLVED, "dlq.resolve", note, actor)

    def discard(self, entry_id: str, reason: str, actor: str | None = None) -> DLQEntry:
        """Abandon an entry permanently, with a reason."""
        if not reason or not reason.strip():
            raise ValueError("discard requires a reason")
        return self._apply(entry_id, DLQStatus.DISCARDED, "dlq.discard", reason.strip(), actor)

    def record_retry_outcome(
        self,
        entry_id: str,
        event: CanonicalEvent,
        error: PipelineError | None,
        retry_count: int,
    ) -> DLQEntry:
        """Close out an operator retry.

        Success resolves the entry. Failure returns the same entry to pending
        with the new error; no second entry is created.
        """
        if error is None:
            return self._apply(
                entry_id,
                DLQStatus.RESOLVED,
                "dlq.retry_succeeded",
                "resolved by retry",
                "retry-worker",
                event=event,
                retry_count=retry_count,
            )
        return self._apply(
            entry_id,
            DLQStatus.PENDING,
            "dlq.retry_failed",
            None,
            "retry-worker",
            event=event,
            retry_count=retry_count,
            stage=error.stage,
            error_class=error.error_class,
            error_message=error.describe(),
        )
