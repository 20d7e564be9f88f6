"""Source payload to canonical event mapping."""

from hookline.normalization.mappers import (
    GHL_EVENT_TYPES,
    MappedFields,
    map_ghl,
    map_retell,
    map_stripe,
    map_twilio,
    parse_timestamp,
)
from hookline.normalization.normalizer import Normalizer, original_from_delivery

__all__ = [
    "GHL_EVENT_TYPES",
    "MappedFields",
    "Normalizer",
    "map_ghl",
    "map_retell",
    "map_stripe",
    "map_twilio",
    "original_from_delivery",
    "parse_timestamp",
]
