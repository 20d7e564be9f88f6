"""Tests for OpenTelemetry tracing configuration and destination spans."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import UTC, datetime

import httpx
import pytest

from hookline.config import Settings
from hookline.destinations.invoker import build_invoker
from hookline.models.events import CanonicalEvent, OriginalPayload
from hookline.observability.tracing import (
    TracingConfigError,
    clear_test_spans,
    configure_tracing,
    get_test_spans,
    shutdown_tracing,
)
from hookline.routing.rules import RoutingRule


@pytest.fixture
def tracing_enabled(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("HOOKLINE_OTEL_ENABLED", "1")
    monkeypatch.setenv("HOOKLINE_OTEL_TEST_CAPTURE", "1")
    yield
    clear_test_spans()
    shutdown_tracing()


class TestConfigureTracing:
    """Environment-driven setup."""

    def test_disabled_by_default(self) -> None:
        """Without HOOKLINE_OTEL_ENABLED nothing is configured."""
        assert configure_tracing() is False

    def test_unknown_exporter(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Only otlp and console exporters exist."""
        monkeypatch.setenv("HOOKLINE_OTEL_ENABLED", "1")
        monkeypatch.setenv("HOOKLINE_OTEL_EXPORTER", "zipkin")
        with pytest.raises(TracingConfigError):
            configure_tracing()


class TestDestinationSpans:
    """Spans around destination calls."""

    def test_span_attributes_are_sanitized(self, tracing_enabled: None) -> None:
        """The span records the call without credentials or query strings."""
        assert configure_tracing() is True
        clear_test_spans()

        rule = RoutingRule.model_validate(
            {
                "id": "r1",
                "destination": {
                    "kind": "webhook",
                    "url": "https://user:pw@hooks.example.com/in?token=abc",
                    "auth": {"type": "bearer", "secret_env": "HOOK_TOKEN"},
                },
            }
        )
        event = CanonicalEvent(
            event_id="evt_1",
            source="stripe",
            event_type="invoice.paid",
            received_at=datetime(2024, 3, 1, tzinfo=UTC),
            original=OriginalPayload(body=b"{}"),
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204)

        async def scenario() -> None:
            transport = httpx.MockTransport(handler)
            async with httpx.AsyncClient(transport=transport) as client:
                invoker = build_invoker(Settings(), client)
                await invoker.invoke(rule, event)

        with pytest.MonkeyPatch.context() as mp:
            mp.setenv("HOOK_TOKEN", "super-secret-token")
            asyncio.run(scenario())

        spans = [s for s in get_test_spans() if s.name == "destination.invoke"]
        assert len(spans) == 1
        attributes = dict(spans[0].attributes or {})
        assert attributes["http.url"] == "https://hooks.example.com/in"
        assert attributes["http.status_code"] == 204
        assert attributes["hookline.destination_kind"] == "webhook"
        assert attributes["hookline.event_id"] == "evt_1"
        assert "super-secret-token" not in repr(attributes)
