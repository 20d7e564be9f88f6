"""Destination capability interface and shared HTTP call helper.

Security:
- Never put secrets or tokens in span attributes or logs
- Span URLs are sanitized (no userinfo, querystring or fragment)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlsplit, urlunsplit

import httpx
from opentelemetry import trace

from hookline.errors import DestinationError, DestinationTimeoutError, ErrorClass, classify_status
from hookline.models.events import CanonicalEvent, isoformat_z

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "hookline/0.1"
TRACER_NAME = "hookline.destinations"


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of a successful destination call.

    Attributes:
        status_code: HTTP status from the destination.
        duration_ms: Call duration in milliseconds.
        response: Parsed JSON response body, if any.
    """

    status_code: int
    duration_ms: int
    response: dict[str, Any] | None = None


class Destination(Protocol):
    """Uniform capability the invoker calls. One implementation per kind."""

    kind: str

    async def invoke(
        self, spec: Any, event: CanonicalEvent, timeout_seconds: float
    ) -> InvocationResult:
        """Perform the call.

        Raises:
            DestinationError: Classified transient or permanent.
        """
        ...


def sanitize_url(url: str) -> str:
    """scheme://host[:port]/path only; "unknown" if malformed."""
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if not host:
            return "unknown"
        port = f":{parts.port}" if parts.port else ""
        return urlunsplit((parts.scheme, f"{host}{port}", parts.path, "", "")) or "unknown"
    except ValueError:
        return "unknown"


def event_envelope(event: CanonicalEvent) -> dict[str, Any]:
    """JSON body sent to destinations. The raw original payload stays behind."""
    return {
        "event_id": event.event_id,
        "source": event.source,
        "event_type": event.event_type,
        "received_at": isoformat_z(event.received_at),
        "tenant_id": event.tenant_id,
        "customer_id": event.customer_id,
        "data": event.data,
        "metadata": {
            "retry_count": event.metadata.retry_count,
            "signature_verified": event.metadata.signature_verified,
            "schema_valid": event.metadata.schema_valid,
        },
    }


async def send_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    content: bytes,
    headers: dict[str, str],
    timeout_seconds: float,
    span_attributes: dict[str, Any],
) -> InvocationResult:
    """Send one request inside a ``destination.invoke`` span.

    Raises:
        DestinationTimeoutError: On httpx timeout. Transient.
        DestinationError: On transport failure (transient) or non-2xx status
            (transient for 5xx and 429, permanent otherwise).
    """
    tracer = trace.get_tracer(TRACER_NAME)
    attributes = {
        "http.method": method,
        "http.url": sanitize_url(url),
        "net.peer.name": urlsplit(url).hostname or "unknown",
        **span_attributes,
    }

    with tracer.start_as_current_span("destination.invoke", attributes=attributes) as span:
        start = time.monotonic()
        request_headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Content-Type": "application/json",
            **headers,
        }
        try:
            response = await client.request(
                method,
                url,
                content=content,
                headers=request_headers,
                timeout=timeout_seconds,
            )
        except httpx.TimeoutException as e:
            span.set_status(trace.StatusCode.ERROR, "timeout")
            span.record_exception(e)
            raise DestinationTimeoutError(timeout_seconds) from e
        except httpx.TransportError as e:
            span.set_status(trace.StatusCode.ERROR, "transport error")
            span.record_exception(e)
            raise DestinationError(
                f"transport error: {type(e).__name__}", ErrorClass.TRANSIENT
            ) from e
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            span.set_attribute("hookline.duration_ms", duration_ms)

        span.set_attribute("http.status_code", response.status_code)
        error_class = classify_status(response.status_code)
        if error_class is not None:
            span.set_status(trace.StatusCode.ERROR, f"HTTP {response.status_code}")
            raise DestinationError(
                f"HTTP {response.status_code} from {sanitize_url(url)}",
                error_class,
                status_code=response.status_code,
            )

        body: dict[str, Any] | None = None
        if response.content and response.headers.get("content-type", "").startswith(
            "application/json"
        ):
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            body = parsed if isinstance(parsed, dict) else None

        return InvocationResult(
            status_code=response.status_code, duration_ms=duration_ms, response=body
        )
