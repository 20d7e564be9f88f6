"""Maps verified, schema-valid payloads to CanonicalEvent."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from hookline.errors import MappingError
from hookline.models.events import (
    CanonicalEvent,
    EventMetadata,
    OriginalPayload,
    VerifiedDelivery,
)
from hookline.normalization.mappers import MappedFields

logger = logging.getLogger(__name__)

Mapper = Callable[[dict[str, Any]], MappedFields]

REDACTED_HEADERS = frozenset({"authorization", "cookie"})

PROVISIONAL_EVENT_TYPE = "ingress.unprocessed"


def original_from_delivery(delivery: VerifiedDelivery) -> OriginalPayload:
    """Headers and untouched body bytes, with credential headers removed."""
    headers = {k: v for k, v in delivery.raw.headers.items() if k not in REDACTED_HEADERS}
    return OriginalPayload(headers=headers, body=delivery.raw.body)


class Normalizer:
    """Dispatches to the mapper registered for the delivery's source.

    Args:
        mappers: {source -> mapper}, resolved once at startup.
    """

    def __init__(self, mappers: Mapping[str, Mapper]) -> None:
        self._mappers = dict(mappers)

    def normalize(self, delivery: VerifiedDelivery) -> CanonicalEvent:
        """Build the canonical event for a verified, valid delivery.

        Raises:
            MappingError: If the payload cannot be mapped. Permanent.
        """
        source = delivery.source
        mapper = self._mappers.get(source)
        if mapper is None:
            raise MappingError(source, "source", "no mapping registered")

        mapped = mapper(delivery.payload)
        headers = delivery.raw.headers
        tenant_id = mapped.tenant_id or headers.get("x-tenant-id") or None
        data = dict(mapped.data)
        correlation_id = headers.get("x-correlation-id")
        if correlation_id:
            data.setdefault("correlation_id", correlation_id)

        try:
            return CanonicalEvent(
                event_id=delivery.event_id,
                source=source,
                event_type=mapped.event_type,
                received_at=delivery.raw.received_at,
                tenant_id=tenant_id,
                customer_id=mapped.customer_id,
                data=data,
                original=original_from_delivery(delivery),
                metadata=EventMetadata(signature_verified=True, schema_valid=True),
            )
        except ValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(p) for p in first.get("loc", ())) or "event"
            raise MappingError(source, field_name, first.get("msg", "invalid value")) from e

    @staticmethod
    def provisional(delivery: VerifiedDelivery) -> CanonicalEvent:
        """Placeholder event for deliveries that failed before normalization.

        Carries the event id, ``original`` and whatever JSON object was parsed,
        so the failure can be audited, dead-lettered and replayed like any
        other event.
        """
        return CanonicalEvent(
            event_id=delivery.event_id,
            source=delivery.source,
            event_type=PROVISIONAL_EVENT_TYPE,
            received_at=delivery.raw.received_at,
            tenant_id=delivery.raw.headers.get("x-tenant-id") or None,
            data=dict(delivery.payload),
            original=original_from_delivery(delivery),
            metadata=EventMetadata(signature_verified=True, schema_valid=False),
        )
