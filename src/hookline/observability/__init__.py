"""Tracing setup."""

from hookline.observability.tracing import (
    TracingConfigError,
    clear_test_spans,
    configure_tracing,
    get_test_spans,
    instrument_fastapi,
    instrument_httpx,
    shutdown_tracing,
)

__all__ = [
    "TracingConfigError",
    "clear_test_spans",
    "configure_tracing",
    "get_test_spans",
    "instrument_fastapi",
    "instrument_httpx",
    "shutdown_tracing",
]
