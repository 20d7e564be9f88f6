"""Per-source payload mappings.

Each mapper is a pure function from a schema-valid payload to MappedFields.
Adding a source means adding a mapper here and an adapter entry; the router
is never touched. A field that passed the schema but has a shape the mapper
cannot use raises MappingError.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from hookline.errors import MappingError

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


@dataclass(frozen=True)
class MappedFields:
    """Source-specific part of a canonical event."""

    event_type: str
    tenant_id: str | None = None
    customer_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


def snake_case(name: str) -> str:
    """ContactCreate -> contact_create, locationId -> location_id."""
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").lower()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings and Unix epoch seconds or milliseconds.

    Returns None when the value is absent or not a recognizable timestamp.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, ValueError, OSError):
            return None
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return None


def _optional_str(source: str, payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str | int):
        raise MappingError(source, key, f"expected string, got {type(value).__name__}")
    return str(value)


# HighLevel ------------------------------------------------------------------

GHL_EVENT_TYPES: dict[str, str] = {
    "ContactCreate": "contact.created",
    "ContactUpdate": "contact.updated",
    "ContactDelete": "contact.deleted",
    "ContactTagUpdate": "contact.tag_updated",
    "ContactDndUpdate": "contact.dnd_updated",
    "OpportunityCreate": "opportunity.created",
    "OpportunityUpdate": "opportunity.updated",
    "OpportunityStatusUpdate": "opportunity.status_updated",
    "OpportunityDelete": "opportunity.deleted",
    "AppointmentCreate": "appointment.created",
    "AppointmentUpdate": "appointment.updated",
    "AppointmentDelete": "appointment.deleted",
    "InboundMessage": "message.inbound",
    "OutboundMessage": "message.outbound",
    "TaskCreate": "task.created",
    "NoteCreate": "note.created",
}


def _ghl_custom_fields(payload: dict[str, Any]) -> dict[str, Any]:
    raw = payload.get("customFields")
    if raw is None:
        return {}
    if not isinstance(raw, list):
        raise MappingError("ghl", "customFields", "expected a list")
    fields: dict[str, Any] = {}
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or "id" not in item:
            raise MappingError("ghl", f"customFields[{index}]", "expected an object with 'id'")
        fields[str(item["id"])] = item.get("value")
    return fields


def map_ghl(payload: dict[str, Any]) -> MappedFields:
    ghl_type = payload["type"]
    event_type = GHL_EVENT_TYPES.get(ghl_type)
    if event_type is None:
        raise MappingError("ghl", "type", f"no canonical type for '{ghl_type}'")

    customer_id = _optional_str("ghl", payload, "contactId")
    if customer_id is None and ghl_type.startswith("Contact"):
        customer_id = _optional_str("ghl", payload, "id")

    data = {
        snake_case(k): v
        for k, v in payload.items()
        if k not in ("type", "customFields", "timestamp", "webhookId")
    }
    data["ghl_type"] = ghl_type
    custom = _ghl_custom_fields(payload)
    if custom:
        data["custom_fields"] = custom

    return MappedFields(
        event_type=event_type,
        tenant_id=_optional_str("ghl", payload, "locationId"),
        customer_id=customer_id,
        data=data,
    )


# Stripe ---------------------------------------------------------------------

_STRIPE_FLAT_FIELDS = ("amount", "amount_received", "currency", "status", "livemode")


def map_stripe(payload: dict[str, Any]) -> MappedFields:
    obj = payload["data"]["object"]

    customer = obj.get("customer")
    if isinstance(customer, dict):
        # Expanded customer object.
        customer = customer.get("id")
    if customer is not None and not isinstance(customer, str):
        raise MappingError("stripe", "data.object.customer", "expected id or customer object")
    if customer is None and obj.get("object") == "customer":
        customer = obj.get("id")

    data: dict[str, Any] = {
        "object_type": obj.get("object"),
        "object_id": obj.get("id"),
        "object": obj,
    }
    for key in _STRIPE_FLAT_FIELDS:
        if key in obj:
            data[key] = obj[key]
    if "livemode" in payload:
        data["livemode"] = payload["livemode"]
    if "previous_attributes" in payload["data"]:
        data["previous_attributes"] = payload["data"]["previous_attributes"]

    return MappedFields(
        event_type=payload["type"],
        tenant_id=_optional_str("stripe", payload, "account"),
        customer_id=customer,
        data=data,
    )


# Retell ---------------------------------------------------------------------


def map_retell(payload: dict[str, Any]) -> MappedFields:
    event = payload["event"]
    noun, _, verb = event.partition("_")
    call = payload["call"]

    metadata = call.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MappingError("retell", "call.metadata", "expected an object")

    data: dict[str, Any] = {
        k: call[k]
        for k in (
            "call_id",
            "agent_id",
            "call_type",
            "call_status",
            "from_number",
            "to_number",
            "disconnection_reason",
        )
        if k in call
    }
    start, end = call.get("start_timestamp"), call.get("end_timestamp")
    if isinstance(start, int) and isinstance(end, int) and end >= start:
        data["duration_ms"] = end - start
    if "call_analysis" in call:
        data["call_analysis"] = call["call_analysis"]
    if metadata:
        data["metadata"] = metadata

    return MappedFields(
        event_type=f"{noun}.{verb}",
        tenant_id=_optional_str("retell", metadata, "tenant_id"),
        customer_id=_optional_str("retell", metadata, "customer_id"),
        data=data,
    )


# Twilio ---------------------------------------------------------------------


def twilio_status(payload: dict[str, Any]) -> tuple[str, str, str]:
    """Return (kind, sid, status) for a message or call callback."""
    if payload.get("MessageSid"):
        return "message", payload["MessageSid"], payload.get("MessageStatus", "")
    return "call", payload["CallSid"], payload.get("CallStatus", "")


def map_twilio(payload: dict[str, Any]) -> MappedFields:
    kind, sid, status = twilio_status(payload)
    if not status:
        raise MappingError("twilio", f"{kind.capitalize()}Status", "missing status")

    data: dict[str, Any] = {snake_case(k): v for k, v in payload.items()}
    data["sid"] = sid
    data["status"] = status

    return MappedFields(
        event_type=f"{kind}.{snake_case(status)}",
        tenant_id=_optional_str("twilio", payload, "AccountSid"),
        customer_id=_optional_str("twilio", payload, "From"),
        data=data,
    )
