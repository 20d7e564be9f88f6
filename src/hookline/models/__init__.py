"""hookline domain models."""

from hookline.models.events import (
    CanonicalEvent,
    EventMetadata,
    OriginalPayload,
    RawDelivery,
    VerifiedDelivery,
    generate_event_id,
    isoformat_z,
    utc_now,
)

__all__ = [
    "CanonicalEvent",
    "EventMetadata",
    "OriginalPayload",
    "RawDelivery",
    "VerifiedDelivery",
    "generate_event_id",
    "isoformat_z",
    "utc_now",
]
