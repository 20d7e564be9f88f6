"""Tests for the HTTP surface: health, webhook receipt, rate limiting, counters.

The app is built with create_app() around a pipeline whose destinations are
served by httpx.MockTransport. Every test uses the TestClient as a context
manager so the lifespan runs.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from hookline.api.main import create_app
from hookline.audit.sink import InMemoryAuditSink
from hookline.config import RetrySettings, Settings
from hookline.idempotency.store import InMemoryIdempotencyStore
from hookline.pipeline.factory import build_pipeline
from hookline.pipeline.ingress import IngressPipeline
from hookline.rate_limit.limiter import RateLimitConfig, SourceRateLimiter
from hookline.retry.dlq import InMemoryDeadLetterStore
from hookline.routing.engine import RuleRegistry
from hookline.routing.rules import RoutingRule
from hookline.verification.signing import hmac_hex

GHL_SECRET = "ghl-secret"

SETTINGS = Settings(
    sources=("ghl", "stripe"),
    secrets={"ghl": GHL_SECRET, "stripe": "whsec_test"},
    orchestrator_url="https://orchestrator.test",
    retry=RetrySettings(base_seconds=0.001, max_delay_seconds=0.005),
)

SYNC_RULE = RoutingRule.model_validate(
    {
        "id": "onboard",
        "conditions": {"sources": ["ghl"]},
        "destination": {"kind": "workflow", "workflow_id": "onboard-contact"},
        "async": False,
    }
)


def _orchestrator(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"run_id": "run-1"})


def _pipeline(
    settings: Settings = SETTINGS,
    handler: Callable[[httpx.Request], httpx.Response] = _orchestrator,
) -> IngressPipeline:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return build_pipeline(
        settings,
        client,
        idempotency_store=InMemoryIdempotencyStore(),
        audit_sink=InMemoryAuditSink(),
        dlq_store=InMemoryDeadLetterStore(),
        rules=RuleRegistry([SYNC_RULE]),
    )


def _signed(payload: dict[str, Any] | list[Any]) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    return body, {
        "Content-Type": "application/json",
        "X-GHL-Signature": hmac_hex(GHL_SECRET, body),
    }


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app(SETTINGS, pipeline=_pipeline(), run_worker=False)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """GET /health."""

    def test_health(self, client: TestClient) -> None:
        """Health answers without touching any store."""
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"

    def test_request_id_generated_and_echoed(self, client: TestClient) -> None:
        """A request id is generated, or reused from the inbound header."""
        generated = client.get("/health").headers["X-Request-Id"]
        assert len(generated) == 36
        echoed = client.get("/health", headers={"X-Request-Id": "trace-42"})
        assert echoed.headers["X-Request-Id"] == "trace-42"


class TestWebhookReceipt:
    """POST /webhooks/{source}."""

    def test_accepted(self, client: TestClient, ghl_payload: dict[str, Any]) -> None:
        """A signed delivery is accepted with its event id."""
        body, headers = _signed(ghl_payload)
        response = client.post("/webhooks/ghl", content=body, headers=headers)
        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "event_id": "wh_7f3a"}

    def test_duplicate(self, client: TestClient, ghl_payload: dict[str, Any]) -> None:
        """Redelivery answers 200 without reprocessing."""
        body, headers = _signed(ghl_payload)
        client.post("/webhooks/ghl", content=body, headers=headers)
        response = client.post("/webhooks/ghl", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"message": "already processed"}

    def test_bad_signature(self, client: TestClient, ghl_payload: dict[str, Any]) -> None:
        """Forged deliveries get 401 with no hint of the reason."""
        body, headers = _signed(ghl_payload)
        headers["X-GHL-Signature"] = "0" * 64
        response = client.post(
            "/webhooks/ghl", content=body, headers={**headers, "X-Request-Id": "req-9"}
        )

        assert response.status_code == 401
        assert response.json() == {
            "code": "SIGNATURE_INVALID",
            "message": "Signature verification failed",
            "details": None,
            "request_id": "req-9",
        }
        audit = client.app.state.pipeline.audit.sink
        assert audit.find(record_type="security")[0]["request_id"] == "req-9"

    def test_unknown_source(self, client: TestClient) -> None:
        """Sources that are not enabled answer 404."""
        response = client.post("/webhooks/retell", content=b"{}")
        assert response.status_code == 404
        assert response.json()["code"] == "UNKNOWN_SOURCE"

    def test_schema_violation(self, client: TestClient, ghl_payload: dict[str, Any]) -> None:
        """Schema failures list every violation with its JSON path."""
        ghl_payload["type"] = "SomethingElse"
        ghl_payload["tags"] = ["ok", 7]
        body, headers = _signed(ghl_payload)

        response = client.post("/webhooks/ghl", content=body, headers=headers)

        assert response.status_code == 400
        error = response.json()
        assert error["code"] == "SCHEMA_VALIDATION_FAILED"
        paths = sorted(v["path"] for v in error["details"]["violations"])
        assert paths == ["$.tags[1]", "$.type"]

    def test_invalid_json(self, client: TestClient) -> None:
        """Authentic bodies that are not JSON objects answer 400."""
        body, headers = _signed([1, 2, 3])
        response = client.post("/webhooks/ghl", content=body, headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_JSON"

    def test_get_not_allowed(self, client: TestClient) -> None:
        """Only POST is routed."""
        response = client.get("/webhooks/ghl")
        assert response.status_code == 405
        assert response.json()["code"] == "METHOD_NOT_ALLOWED"


class TestRateLimiting:
    """Per-source token buckets."""

    def test_limit_per_source(self, ghl_payload: dict[str, Any]) -> None:
        """Over-limit deliveries get 429 with Retry-After; other sources are unaffected."""
        limiter = SourceRateLimiter(RateLimitConfig(rpm=1, burst_multiplier=1))
        app = create_app(SETTINGS, pipeline=_pipeline(), rate_limiter=limiter, run_worker=False)
        body, headers = _signed(ghl_payload)

        with TestClient(app) as client:
            first = client.post("/webhooks/ghl", content=body, headers=headers)
            second = client.post("/webhooks/ghl", content=body, headers=headers)
            other = client.post("/webhooks/stripe", content=b"{}")
            counters = client.get("/internal/counters").json()

        assert first.status_code == 202
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "60"
        assert second.json()["details"] == {"limit_rpm": 1, "retry_after_seconds": 60}
        assert other.status_code == 401
        assert counters["sources"]["ghl"]["rate_limited"] == 1
        assert counters["sources"]["ghl"]["received"] == 1

    def test_limiter_failure_fails_closed(self, ghl_payload: dict[str, Any]) -> None:
        """A broken limiter answers 500 instead of letting traffic through."""

        class BrokenLimiter(SourceRateLimiter):
            def check(self, source: str) -> Any:
                raise RuntimeError("bucket corrupted")

        app = create_app(
            SETTINGS, pipeline=_pipeline(), rate_limiter=BrokenLimiter(), run_worker=False
        )
        body, headers = _signed(ghl_payload)
        with TestClient(app) as client:
            response = client.post("/webhooks/ghl", content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["code"] == "RATE_LIMITER_FAILED"


class TestCounters:
    """GET /internal/counters."""

    def test_snapshot(self, client: TestClient, ghl_payload: dict[str, Any]) -> None:
        """Counters reflect receipts and include the retry queue depth."""
        body, headers = _signed(ghl_payload)
        client.post("/webhooks/ghl", content=body, headers=headers)
        client.post("/webhooks/ghl", content=body, headers=headers)

        snapshot = client.get("/internal/counters").json()

        ghl = snapshot["sources"]["ghl"]
        assert ghl["received"] == 2
        assert ghl["accepted"] == 1
        assert ghl["duplicate"] == 1
        assert ghl["processed"] == 1
        assert snapshot["retry_queue_depth"] == 0
        assert snapshot["dlq_new_in_interval"] == 0


class TestLifespan:
    """Startup and shutdown."""

    def test_worker_runs_with_app(self) -> None:
        """The retry worker starts with the app and stops with it."""
        app = create_app(SETTINGS, pipeline=_pipeline())
        with TestClient(app):
            assert app.state.retry_worker.running
        assert not app.state.retry_worker.running

    def test_builds_pipeline_from_settings(self, tmp_path: Any) -> None:
        """Without an injected pipeline the app wires one from settings."""
        settings = Settings(
            sources=("ghl",),
            secrets={"ghl": GHL_SECRET},
            audit_log_path=str(tmp_path / "audit.jsonl"),
        )
        app = create_app(settings, run_worker=False)
        with TestClient(app) as client:
            response = client.post("/webhooks/stripe", content=b"{}")
        assert response.status_code == 404
        assert list(app.state.pipeline.sources) == ["ghl"]

    def test_queued_retries_dead_lettered_on_shutdown(
        self, ghl_payload: dict[str, Any]
    ) -> None:
        """Retries still queued when the app stops are parked in the DLQ."""

        def unavailable(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        app = create_app(SETTINGS, pipeline=_pipeline(handler=unavailable), run_worker=False)
        body, headers = _signed(ghl_payload)
        with TestClient(app) as client:
            response = client.post("/webhooks/ghl", content=body, headers=headers)
            assert response.status_code == 202
            assert len(app.state.pipeline.queue) == 1

        pipeline: IngressPipeline = app.state.pipeline
        assert len(pipeline.queue) == 0
        entries = pipeline.dlq.list()
        assert len(entries) == 1
        assert entries[0].event_id == "wh_7f3a"
        assert entries[0].error_class.value == "transient"
        assert entries[0].error_message.startswith(
            "invoke: shutdown before the scheduled retry"
        )
