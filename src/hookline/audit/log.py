"""Audit record construction.

Record types:
- "event": one per delivery outcome (processed, duplicate, accepted,
  failed, retry_scheduled, dead_lettered, no_match). Carries the canonical
  event, its metadata and ``original`` (headers + body_b64) so the raw
  payload bytes can be rebuilt exactly.
- "security": signature and replay rejections, and raised alerts
  (action "security.alert_raised"). Never carries the body or signatures.
- "operator": DLQ transitions and rule changes made by operators.

Audit writes never change a delivery outcome. A failing sink is logged and
counted; the pipeline keeps going.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from hookline.audit.sink import AuditSink, AuditSinkError
from hookline.models.events import CanonicalEvent, isoformat_z, utc_now

logger = logging.getLogger(__name__)

_SENSITIVE_HEADER_MARKERS = ("signature", "authorization", "token", "secret", "cookie")


def _header_names(headers: dict[str, str]) -> list[str]:
    return sorted(headers)


def _is_sensitive(name: str) -> bool:
    return any(marker in name.lower() for marker in _SENSITIVE_HEADER_MARKERS)


class AuditLog:
    """Builds audit records and appends them to a sink."""

    def __init__(
        self,
        sink: AuditSink,
        clock: Callable[[], datetime] = utc_now,
        on_failure: Callable[[], None] | None = None,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._on_failure = on_failure

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def _write(self, record: dict[str, Any]) -> dict[str, Any]:
        try:
            self._sink.emit(record)
        except AuditSinkError:
            logger.exception(
                "Failed to write %s audit record %s", record["record_type"], record["record_id"]
            )
            if self._on_failure is not None:
                self._on_failure()
        return record

    def _base(self, record_type: str) -> dict[str, Any]:
        return {
            "record_id": str(uuid.uuid4()),
            "record_type": record_type,
            "recorded_at": isoformat_z(self._clock()),
        }

    def record_event(
        self,
        event: CanonicalEvent,
        outcome: str,
        stages: list[str],
        *,
        rule_id: str | None = None,
        error: str | None = None,
        error_class: str | None = None,
        request_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append one event outcome record."""
        record = self._base("event")
        record.update(event.to_audit_dict())
        record.update(
            {
                "outcome": outcome,
                "stages": list(stages),
                "rule_id": rule_id,
                "error": error,
                "error_class": error_class,
                "request_id": request_id,
            }
        )
        if extra:
            record["extra"] = extra
        return self._write(record)

    def record_security(
        self,
        *,
        source: str,
        action: str,
        reason: str,
        received_at: datetime,
        headers: dict[str, str] | None = None,
        event_id: str | None = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a security record.

        Only header names are kept, and values of non-sensitive headers are
        dropped as well; the record must be safe to share with reviewers.
        """
        record = self._base("security")
        record.update(
            {
                "action": action,
                "source": source,
                "event_id": event_id,
                "reason": reason,
                "received_at": isoformat_z(received_at),
                "request_id": request_id,
                "header_names": _header_names(headers or {}),
                "signature_headers_present": sorted(
                    h for h in (headers or {}) if _is_sensitive(h)
                ),
                "details": details or {},
            }
        )
        return self._write(record)

    def record_operator(
        self,
        *,
        action: str,
        target: str,
        actor: str | None = None,
        event_id: str | None = None,
        source: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append an operator action record."""
        record = self._base("operator")
        record.update(
            {
                "action": action,
                "target": target,
                "actor": actor or "operator",
                "event_id": event_id,
                "source": source,
                "received_at": record["recorded_at"],
                "details": details or {},
            }
        )
        return self._write(record)
