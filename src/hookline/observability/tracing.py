"""OpenTelemetry tracing configuration for hookline.

Spans are opened around destination calls; export is handled by whatever
collector the deployment points at.

Environment Variables:
    HOOKLINE_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    HOOKLINE_OTEL_SERVICE_NAME: Service name for spans (default: "hookline")
    HOOKLINE_OTEL_EXPORTER: Exporter type - "otlp" or "console" (default: "otlp")
    HOOKLINE_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    HOOKLINE_OTEL_TEST_CAPTURE: Set to "1" to use in-memory exporter for tests

Never exported: secrets, Authorization headers, signatures, request bodies,
URL userinfo or query strings.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_is_configured: bool = False
_test_exporter: Any = None


class TracingConfigError(Exception):
    """Raised when an unknown exporter is requested."""


def _get_env_bool(key: str, default: bool = False) -> bool:
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def _get_env_str(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip() or default


def _create_otlp_exporter(endpoint: str | None) -> Any:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

    kwargs: dict[str, Any] = {}
    if endpoint:
        kwargs["endpoint"] = endpoint
    return OTLPSpanExporter(**kwargs)


def configure_tracing() -> bool:
    """Configure OpenTelemetry tracing from HOOKLINE_OTEL_* variables.

    Idempotent - safe to call multiple times.

    Returns:
        True if tracing is enabled and configured, False otherwise.

    Raises:
        TracingConfigError: If HOOKLINE_OTEL_EXPORTER names an unknown exporter.
    """
    global _tracer_provider, _is_configured, _test_exporter

    if not _get_env_bool("HOOKLINE_OTEL_ENABLED"):
        _is_configured = True
        logger.debug("OpenTelemetry tracing disabled (HOOKLINE_OTEL_ENABLED not set)")
        return False

    test_capture = _get_env_bool("HOOKLINE_OTEL_TEST_CAPTURE")
    if _test_exporter is not None and test_capture:
        return True
    if _is_configured and _tracer_provider is not None:
        return True

    exporter_type = _get_env_str("HOOKLINE_OTEL_EXPORTER", "otlp").lower()
    if exporter_type not in ("otlp", "console"):
        raise TracingConfigError(
            f"HOOKLINE_OTEL_EXPORTER must be 'otlp' or 'console', got '{exporter_type}'"
        )

    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    service_name = _get_env_str("HOOKLINE_OTEL_SERVICE_NAME", "hookline")
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    if test_capture:
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

        _test_exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
    elif exporter_type == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    else:
        endpoint = _get_env_str("HOOKLINE_OTEL_EXPORTER_OTLP_ENDPOINT") or None
        provider.add_span_processor(BatchSpanProcessor(_create_otlp_exporter(endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    _is_configured = True

    logger.info(
        "OpenTelemetry tracing configured: service=%s, exporter=%s",
        service_name,
        "in-memory" if test_capture else exporter_type,
    )
    return True


def shutdown_tracing() -> None:
    """Flush and shut down the provider configured here, if any."""
    global _tracer_provider, _is_configured
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    _tracer_provider = None
    _is_configured = False


def get_test_spans() -> list[ReadableSpan]:
    """Spans captured by the in-memory exporter (HOOKLINE_OTEL_TEST_CAPTURE=1)."""
    if _test_exporter is not None:
        return list(_test_exporter.get_finished_spans())
    return []


def clear_test_spans() -> None:
    if _test_exporter is not None:
        _test_exporter.clear()


def instrument_fastapi(app: Any) -> None:
    """Attach server spans to a FastAPI app when tracing is enabled."""
    if not _get_env_bool("HOOKLINE_OTEL_ENABLED", False):
        return

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,internal/counters")
        logger.debug("FastAPI instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)


def instrument_httpx() -> None:
    """Attach client spans to outbound destination calls when tracing is enabled."""
    if not _get_env_bool("HOOKLINE_OTEL_ENABLED", False):
        return

    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
        logger.debug("httpx instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument httpx: %s", e)
