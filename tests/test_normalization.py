"""Tests for per-source mappers and the normalizer."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from hookline.errors import MappingError, Stage
from hookline.models.events import RawDelivery, VerifiedDelivery
from hookline.normalization.mappers import (
    map_ghl,
    map_retell,
    map_stripe,
    map_twilio,
    parse_timestamp,
    snake_case,
)
from hookline.normalization.normalizer import PROVISIONAL_EVENT_TYPE, Normalizer

RECEIVED_AT = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _verified(
    source: str,
    payload: dict[str, Any],
    event_id: str = "evt-1",
    headers: dict[str, str] | None = None,
) -> VerifiedDelivery:
    raw = RawDelivery.create(
        source, headers or {}, b'{"raw": true}', received_at=RECEIVED_AT
    )
    return VerifiedDelivery(raw=raw, payload=payload, event_id=event_id)


def _normalizer() -> Normalizer:
    return Normalizer(
        {"ghl": map_ghl, "stripe": map_stripe, "retell": map_retell, "twilio": map_twilio}
    )


class TestHelpers:
    """snake_case and parse_timestamp."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("ContactCreate", "contact_create"),
            ("locationId", "location_id"),
            ("in-progress", "in_progress"),
            ("AccountSid", "account_sid"),
            ("already_snake", "already_snake"),
        ],
    )
    def test_snake_case(self, name: str, expected: str) -> None:
        """Camel, Pascal and kebab names become snake_case."""
        assert snake_case(name) == expected

    def test_parse_iso_timestamp(self) -> None:
        """ISO-8601 with Z is parsed as UTC."""
        assert parse_timestamp("2024-01-01T12:00:00Z") == RECEIVED_AT

    def test_parse_epoch_seconds_and_millis(self) -> None:
        """Epoch seconds and milliseconds both parse."""
        assert parse_timestamp(1_704_110_400) == RECEIVED_AT
        assert parse_timestamp(1_704_110_400_000) == RECEIVED_AT

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, [1]])
    def test_unparseable_is_none(self, value: Any) -> None:
        """Unrecognized values return None instead of raising."""
        assert parse_timestamp(value) is None


class TestMappers:
    """Source-specific mappings."""

    def test_ghl_contact(self, ghl_payload: dict[str, Any]) -> None:
        """ContactCreate maps to contact.created with location as tenant."""
        mapped = map_ghl(ghl_payload)
        assert mapped.event_type == "contact.created"
        assert mapped.tenant_id == "loc_123"
        assert mapped.customer_id == "contact_9"
        assert mapped.data["first_name"] == "Ada"
        assert mapped.data["ghl_type"] == "ContactCreate"
        assert mapped.data["custom_fields"] == {"cf_source": "facebook"}
        assert "webhook_id" not in mapped.data

    def test_ghl_bad_custom_fields(self, ghl_payload: dict[str, Any]) -> None:
        """customFields with the wrong shape is a mapping error."""
        ghl_payload["customFields"] = {"cf": 1}
        with pytest.raises(MappingError) as exc_info:
            map_ghl(ghl_payload)
        assert exc_info.value.field == "customFields"
        assert exc_info.value.stage is Stage.NORMALIZE

    def test_stripe_invoice(self, stripe_payload: dict[str, Any]) -> None:
        """Stripe keeps its dotted type and lifts the customer id."""
        mapped = map_stripe(stripe_payload)
        assert mapped.event_type == "invoice.paid"
        assert mapped.tenant_id == "acct_1032D82eZvKYlo2C"
        assert mapped.customer_id == "cus_NffrFeUfNV2Hib"
        assert mapped.data["object_type"] == "invoice"
        assert mapped.data["currency"] == "usd"

    def test_stripe_expanded_customer(self, stripe_payload: dict[str, Any]) -> None:
        """An expanded customer object contributes its id."""
        stripe_payload["data"]["object"]["customer"] = {"id": "cus_X", "object": "customer"}
        assert map_stripe(stripe_payload).customer_id == "cus_X"

    def test_stripe_customer_wrong_type(self, stripe_payload: dict[str, Any]) -> None:
        """A numeric customer is a mapping error."""
        stripe_payload["data"]["object"]["customer"] = 42
        with pytest.raises(MappingError):
            map_stripe(stripe_payload)

    def test_retell_call_ended(self, retell_payload: dict[str, Any]) -> None:
        """call_ended maps to call.ended with duration and metadata ids."""
        mapped = map_retell(retell_payload)
        assert mapped.event_type == "call.ended"
        assert mapped.tenant_id == "tenant-7"
        assert mapped.customer_id == "cust-3"
        assert mapped.data["duration_ms"] == 60_000

    def test_twilio_message_status(self, twilio_payload: dict[str, Any]) -> None:
        """Message callbacks map to message.<status>."""
        mapped = map_twilio(twilio_payload)
        assert mapped.event_type == "message.delivered"
        assert mapped.data["sid"] == twilio_payload["MessageSid"]
        assert mapped.customer_id == "+15550002222"

    def test_twilio_call_status(self) -> None:
        """Call callbacks map kebab statuses to snake_case."""
        payload = {
            "AccountSid": "AC" + "1" * 32,
            "CallSid": "CA" + "2" * 32,
            "CallStatus": "no-answer",
        }
        assert map_twilio(payload).event_type == "call.no_answer"


class TestNormalizer:
    """Normalizer dispatch and CanonicalEvent construction."""

    def test_normalize_sets_provenance(self, stripe_payload: dict[str, Any]) -> None:
        """The canonical event carries id, source, time and metadata flags."""
        event = _normalizer().normalize(_verified("stripe", stripe_payload, event_id="evt_1"))
        assert event.event_id == "evt_1"
        assert event.source == "stripe"
        assert event.received_at == RECEIVED_AT
        assert event.metadata.signature_verified is True
        assert event.metadata.schema_valid is True
        assert event.metadata.retry_count == 0
        assert event.original.body == b'{"raw": true}'

    def test_tenant_header_fallback(self, retell_payload: dict[str, Any]) -> None:
        """Without a payload tenant, X-Tenant-Id supplies it."""
        retell_payload["call"].pop("metadata")
        delivery = _verified("retell", retell_payload, headers={"X-Tenant-Id": "t-9"})
        assert _normalizer().normalize(delivery).tenant_id == "t-9"

    def test_correlation_header(self, ghl_payload: dict[str, Any]) -> None:
        """X-Correlation-Id is kept in data."""
        delivery = _verified("ghl", ghl_payload, headers={"X-Correlation-Id": "corr-1"})
        assert _normalizer().normalize(delivery).data["correlation_id"] == "corr-1"

    def test_credentials_not_retained(self, ghl_payload: dict[str, Any]) -> None:
        """Authorization and Cookie headers are dropped from original."""
        delivery = _verified(
            "ghl",
            ghl_payload,
            headers={"Authorization": "Bearer x", "Cookie": "a=b", "X-GHL-Signature": "s"},
        )
        headers = _normalizer().normalize(delivery).original.headers
        assert "authorization" not in headers
        assert "cookie" not in headers
        assert headers["x-ghl-signature"] == "s"

    def test_unregistered_source(self) -> None:
        """A source without a mapper is a mapping error."""
        with pytest.raises(MappingError):
            _normalizer().normalize(_verified("acme", {}))

    def test_invalid_event_type_becomes_mapping_error(self, stripe_payload: dict[str, Any]) -> None:
        """A mapped event type that is not dotted lowercase fails as MappingError."""
        stripe_payload["type"] = "Invoice"
        with pytest.raises(MappingError) as exc_info:
            _normalizer().normalize(_verified("stripe", stripe_payload))
        assert exc_info.value.field == "event_type"

    def test_event_id_is_write_once(self, stripe_payload: dict[str, Any]) -> None:
        """Reassigning event_id raises."""
        event = _normalizer().normalize(_verified("stripe", stripe_payload))
        with pytest.raises(AttributeError):
            event.event_id = "other"

    def test_provisional_event(self) -> None:
        """Pre-normalization failures get a placeholder event with schema_valid False."""
        delivery = _verified("ghl", {"partial": 1}, headers={"X-Tenant-Id": "t-1"})
        event = Normalizer.provisional(delivery)
        assert event.event_type == PROVISIONAL_EVENT_TYPE
        assert event.tenant_id == "t-1"
        assert event.data == {"partial": 1}
        assert event.metadata.signature_verified is True
        assert event.metadata.schema_valid is False
