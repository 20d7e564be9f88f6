"""Ingress pipeline orchestration and startup wiring."""

from hookline.pipeline.factory import Components, build_components, build_pipeline
from hookline.pipeline.ingress import (
    IngressPipeline,
    ReceiptOutcome,
    ReceiptStatus,
    parse_json_object,
)

__all__ = [
    "Components",
    "IngressPipeline",
    "ReceiptOutcome",
    "ReceiptStatus",
    "build_components",
    "build_pipeline",
    "parse_json_object",
]
