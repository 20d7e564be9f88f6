"""Delivery and canonical event models.

RawDelivery is the untouched inbound request. CanonicalEvent is the
source-agnostic representation produced by the normalizer and owned by the
single worker processing it.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def isoformat_z(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 with a Z suffix."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RawDelivery:
    """An inbound webhook request exactly as received.

    Header names are lower-cased at construction. The mapping is read-only.

    Attributes:
        source: Registered source identifier taken from the inbound path.
        method: HTTP method.
        path: Request path.
        headers: Read-only, lower-cased header map.
        body: Raw body bytes.
        received_at: Arrival time (UTC).
        url: Full request URL as seen by the platform (used by URL-signing schemes).
    """

    source: str
    method: str
    path: str
    headers: MappingProxyType[str, str]
    body: bytes
    received_at: datetime
    url: str = ""

    @classmethod
    def create(
        cls,
        source: str,
        headers: dict[str, str],
        body: bytes,
        *,
        method: str = "POST",
        path: str | None = None,
        url: str = "",
        received_at: datetime | None = None,
    ) -> RawDelivery:
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(
            source=source,
            method=method.upper(),
            path=path or f"/webhooks/{source}",
            headers=MappingProxyType(lowered),
            body=bytes(body),
            received_at=received_at or utc_now(),
            url=url,
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class OriginalPayload(BaseModel):
    """Headers and raw body retained for audit and replay."""

    model_config = ConfigDict(frozen=True)

    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes

    @field_serializer("body")
    def _serialize_body(self, body: bytes) -> str:
        return base64.b64encode(body).decode("ascii")

    @field_validator("body", mode="before")
    @classmethod
    def _decode_body(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value.encode("ascii"), validate=True)
        return value

    def to_record(self) -> dict[str, Any]:
        """Audit-record form: headers plus base64 body."""
        return {
            "headers": dict(self.headers),
            "body_b64": base64.b64encode(self.body).decode("ascii"),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> OriginalPayload:
        """Rebuild from an audit record's ``original`` field."""
        return cls(
            headers=dict(record.get("headers", {})),
            body=base64.b64decode(record["body_b64"].encode("ascii"), validate=True),
        )


class EventMetadata(BaseModel):
    """Processing provenance. Mutated only by the pipeline."""

    signature_verified: bool = False
    schema_valid: bool = False
    retry_count: int = 0
    error: str | None = None


class CanonicalEvent(BaseModel):
    """Source-agnostic normalized webhook event.

    event_id is the idempotency key and is write-once: assignment after
    construction raises.
    """

    model_config = ConfigDict(validate_assignment=True)

    event_id: str = Field(..., min_length=1)
    source: str
    event_type: str = Field(..., pattern=r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")
    received_at: datetime
    processed_at: datetime | None = None
    tenant_id: str | None = None
    customer_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    original: OriginalPayload
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "event_id" and "event_id" in self.__dict__:
            raise AttributeError("event_id is write-once")
        super().__setattr__(name, value)

    @property
    def idempotency_key(self) -> str:
        return f"{self.source}:{self.event_id}"

    def to_audit_dict(self) -> dict[str, Any]:
        """JSON-safe form used in audit records and DLQ entries."""
        return {
            "event_id": self.event_id,
            "source": self.source,
            "event_type": self.event_type,
            "received_at": isoformat_z(self.received_at),
            "processed_at": isoformat_z(self.processed_at) if self.processed_at else None,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "data": self.data,
            "original": self.original.to_record(),
            "metadata": self.metadata.model_dump(),
        }

    @classmethod
    def from_audit_dict(cls, record: dict[str, Any]) -> CanonicalEvent:
        """Inverse of to_audit_dict."""
        return cls(
            event_id=record["event_id"],
            source=record["source"],
            event_type=record["event_type"],
            received_at=datetime.fromisoformat(record["received_at"].replace("Z", "+00:00")),
            processed_at=(
                datetime.fromisoformat(record["processed_at"].replace("Z", "+00:00"))
                if record.get("processed_at")
                else None
            ),
            tenant_id=record.get("tenant_id"),
            customer_id=record.get("customer_id"),
            data=dict(record.get("data") or {}),
            original=OriginalPayload.from_record(record["original"]),
            metadata=EventMetadata(**(record.get("metadata") or {})),
        )


def generate_event_id() -> str:
    """Event id for platforms that do not supply one."""
    return str(uuid.uuid4())


@dataclass
class VerifiedDelivery:
    """A delivery that passed signature verification, with its parsed body.

    Attributes:
        raw: The original delivery.
        payload: Parsed JSON object.
        event_id: Platform-supplied or generated id.
        occurred_at: Self-reported event time, when the platform sends one.
    """

    raw: RawDelivery
    payload: dict[str, Any]
    event_id: str
    occurred_at: datetime | None = None

    @property
    def source(self) -> str:
        return self.raw.source
