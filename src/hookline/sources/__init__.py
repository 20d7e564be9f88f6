"""Registered webhook sources."""

from hookline.sources.registry import (
    KNOWN_SOURCES,
    SourceAdapter,
    SourceRegistry,
    build_adapter,
    build_source_registry,
)

__all__ = [
    "KNOWN_SOURCES",
    "SourceAdapter",
    "SourceRegistry",
    "build_adapter",
    "build_source_registry",
]
