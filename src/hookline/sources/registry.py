"""Source adapter registry.

A SourceAdapter bundles everything source-specific the pipeline needs:
verification strategy, schema name, event-id and timestamp extractors, and
the normalizer mapping. The registry is built once at startup from Settings
and never mutated afterwards.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any

from hookline.config import ConfigError, Settings
from hookline.models.events import RawDelivery, generate_event_id
from hookline.normalization.mappers import (
    MappedFields,
    map_ghl,
    map_retell,
    map_stripe,
    map_twilio,
    parse_timestamp,
    twilio_status,
)
from hookline.verification.strategies import (
    BearerTokenStrategy,
    HmacBodyStrategy,
    StripeSignatureStrategy,
    TwilioSignatureStrategy,
    VerificationStrategy,
)

EventIdExtractor = Callable[[dict[str, Any]], str | None]
TimestampExtractor = Callable[[dict[str, Any]], datetime | None]


@dataclass(frozen=True)
class SourceAdapter:
    """Everything source-specific, behind one value."""

    name: str
    strategy: VerificationStrategy
    schema_name: str
    event_id: EventIdExtractor
    occurred_at: TimestampExtractor
    mapper: Callable[[dict[str, Any]], MappedFields]

    def resolve_event_id(self, payload: dict[str, Any], delivery: RawDelivery) -> str:
        """Platform id, then Idempotency-Key header, then a generated UUID."""
        event_id = self.event_id(payload)
        if event_id:
            return event_id
        header = delivery.header("idempotency-key")
        if header and header.strip():
            return header.strip()
        return generate_event_id()


def _no_timestamp(payload: dict[str, Any]) -> datetime | None:
    return None


def _id_part(value: Any) -> str | None:
    """Non-blank strings and integers only; anything else falls back."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _ghl_event_id(payload: dict[str, Any]) -> str | None:
    return _id_part(payload.get("webhookId")) or _id_part(payload.get("id"))


def _ghl_occurred_at(payload: dict[str, Any]) -> datetime | None:
    return parse_timestamp(payload.get("timestamp"))


def _stripe_event_id(payload: dict[str, Any]) -> str | None:
    value = payload.get("id")
    return value.strip() if isinstance(value, str) and value.strip() else None


def _retell_event_id(payload: dict[str, Any]) -> str | None:
    call = payload.get("call")
    if not isinstance(call, dict):
        return None
    call_id = _id_part(call.get("call_id"))
    if call_id is None:
        return None
    return f"{call_id}:{_id_part(payload.get('event')) or ''}"


def _twilio_event_id(payload: dict[str, Any]) -> str | None:
    if not (payload.get("MessageSid") or payload.get("CallSid")):
        return None
    _, sid, status = twilio_status(payload)
    sid_part = _id_part(sid)
    if sid_part is None:
        return None
    status_part = _id_part(status)
    return f"{sid_part}:{status_part}" if status_part else sid_part


def _default_strategy(name: str, settings: Settings) -> VerificationStrategy:
    if name == "ghl":
        return HmacBodyStrategy(header="x-ghl-signature")
    if name == "retell":
        return HmacBodyStrategy(header="x-retell-signature")
    if name == "stripe":
        return StripeSignatureStrategy(tolerance_seconds=settings.freshness_tolerance_seconds)
    if name == "twilio":
        return TwilioSignatureStrategy(public_base_url=settings.public_base_url)
    raise ConfigError(f"No verification strategy for source '{name}'")


_EXTRACTORS: dict[
    str, tuple[EventIdExtractor, TimestampExtractor, Callable[[dict[str, Any]], MappedFields]]
] = {
    "ghl": (_ghl_event_id, _ghl_occurred_at, map_ghl),
    "stripe": (_stripe_event_id, _no_timestamp, map_stripe),
    "retell": (_retell_event_id, _no_timestamp, map_retell),
    "twilio": (_twilio_event_id, _no_timestamp, map_twilio),
}

KNOWN_SOURCES = frozenset(_EXTRACTORS)


def build_adapter(name: str, settings: Settings) -> SourceAdapter:
    """Build the adapter for one source.

    Raises:
        ConfigError: If the source or its scheme override is unknown.
    """
    if name not in _EXTRACTORS:
        raise ConfigError(
            f"Unknown source '{name}'; known sources: {', '.join(sorted(KNOWN_SOURCES))}"
        )

    scheme = settings.schemes.get(name)
    if scheme is None:
        strategy = _default_strategy(name, settings)
    elif scheme == "bearer":
        strategy = BearerTokenStrategy()
    else:
        raise ConfigError(f"HOOKLINE_SCHEME_{name.upper()} must be 'bearer', got '{scheme}'")

    event_id, occurred_at, mapper = _EXTRACTORS[name]
    return SourceAdapter(
        name=name,
        strategy=strategy,
        schema_name=name,
        event_id=event_id,
        occurred_at=occurred_at,
        mapper=mapper,
    )


class SourceRegistry(Mapping[str, SourceAdapter]):
    """Read-only {source -> adapter} map."""

    def __init__(self, adapters: Mapping[str, SourceAdapter]) -> None:
        self._adapters = MappingProxyType(dict(adapters))

    def __getitem__(self, name: str) -> SourceAdapter:
        return self._adapters[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def strategies(self) -> dict[str, VerificationStrategy]:
        return {name: a.strategy for name, a in self._adapters.items()}

    def mappers(self) -> dict[str, Callable[[dict[str, Any]], MappedFields]]:
        return {name: a.mapper for name, a in self._adapters.items()}


def build_source_registry(settings: Settings) -> SourceRegistry:
    """Resolve the adapters for every enabled source."""
    return SourceRegistry({name: build_adapter(name, settings) for name in settings.sources})
