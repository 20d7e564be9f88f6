"""HTTP implementations of the three destination kinds.

- WorkflowDestination: POST {orchestrator}/workflows/{workflow_id}/runs
- ServiceDestination: POST {services}/services/{service}/{method}
- ExternalWebhookDestination: POST/PUT to the rule's URL with configured auth

Workflow and service calls carry a service token from a ServiceTokenProvider
(the identity service is an external collaborator). Webhook credentials are
read from the environment variable the rule names, at call time.
"""

from __future__ import annotations

import base64
import json
import os
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from hookline.destinations.base import InvocationResult, event_envelope, send_json
from hookline.errors import DestinationError, ErrorClass
from hookline.models.events import CanonicalEvent
from hookline.routing.rules import (
    ServiceDestinationSpec,
    WebhookDestinationSpec,
    WorkflowDestinationSpec,
)
from hookline.verification.signing import sign_webhook_payload


class ServiceTokenProvider(Protocol):
    """Issues bearer tokens for internal calls."""

    def get_token(self, audience: str) -> str | None: ...


class StaticServiceTokenProvider:
    """Returns one preconfigured token for every audience."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    def get_token(self, audience: str) -> str | None:
        return self._token


def _dumps(body: dict[str, Any]) -> bytes:
    return json.dumps(body, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def _require_base_url(base_url: str | None, kind: str) -> str:
    if not base_url:
        raise DestinationError(f"{kind} base URL not configured", ErrorClass.PERMANENT)
    return base_url.rstrip("/")


class _InternalDestination:
    kind = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str | None,
        tokens: ServiceTokenProvider | None = None,
    ) -> None:
        self._client = client
        self._base_url = base_url
        self._tokens = tokens or StaticServiceTokenProvider(None)

    def _auth_headers(self, audience: str) -> dict[str, str]:
        token = self._tokens.get_token(audience)
        return {"Authorization": f"Bearer {token}"} if token else {}


class WorkflowDestination(_InternalDestination):
    """Starts a named orchestrator workflow."""

    kind = "workflow"

    async def invoke(
        self, spec: WorkflowDestinationSpec, event: CanonicalEvent, timeout_seconds: float
    ) -> InvocationResult:
        base = _require_base_url(self._base_url, "orchestrator")
        url = f"{base}/workflows/{quote(spec.workflow_id, safe='')}/runs"
        body = {"parameters": spec.parameters, "event": event_envelope(event)}
        return await send_json(
            self._client,
            "POST",
            url,
            content=_dumps(body),
            headers={
                **self._auth_headers("orchestrator"),
                "Idempotency-Key": event.idempotency_key,
            },
            timeout_seconds=timeout_seconds,
            span_attributes={
                "hookline.destination_kind": self.kind,
                "hookline.workflow_id": spec.workflow_id,
                "hookline.event_id": event.event_id,
            },
        )


class ServiceDestination(_InternalDestination):
    """Calls a named internal service method."""

    kind = "service"

    async def invoke(
        self, spec: ServiceDestinationSpec, event: CanonicalEvent, timeout_seconds: float
    ) -> InvocationResult:
        base = _require_base_url(self._base_url, "services")
        url = f"{base}/services/{quote(spec.service, safe='')}/{quote(spec.method, safe='')}"
        body = {"parameters": spec.parameters, "event": event_envelope(event)}
        return await send_json(
            self._client,
            "POST",
            url,
            content=_dumps(body),
            headers={
                **self._auth_headers(spec.service),
                "Idempotency-Key": event.idempotency_key,
            },
            timeout_seconds=timeout_seconds,
            span_attributes={
                "hookline.destination_kind": self.kind,
                "hookline.service": spec.service,
                "hookline.service_method": spec.method,
                "hookline.event_id": event.event_id,
            },
        )


class ExternalWebhookDestination:
    """Delivers the event envelope to an external URL."""

    kind = "webhook"

    def __init__(
        self,
        client: httpx.AsyncClient,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._environ = environ if environ is not None else os.environ
        self._clock = clock

    def _secret(self, env_name: str) -> str:
        secret = self._environ.get(env_name)
        if not secret:
            raise DestinationError(
                f"webhook credential variable {env_name} is not set", ErrorClass.PERMANENT
            )
        return secret

    def _auth_headers(self, spec: WebhookDestinationSpec, content: bytes) -> dict[str, str]:
        auth = spec.auth
        if auth is None:
            return {}
        secret = self._secret(auth.secret_env)
        if auth.type == "bearer":
            return {"Authorization": f"Bearer {secret}"}
        if auth.type == "basic":
            pair = f"{auth.username}:{secret}".encode()
            return {"Authorization": "Basic " + base64.b64encode(pair).decode("ascii")}
        return sign_webhook_payload(secret, int(self._clock()), content).headers

    async def invoke(
        self, spec: WebhookDestinationSpec, event: CanonicalEvent, timeout_seconds: float
    ) -> InvocationResult:
        content = _dumps(event_envelope(event))
        headers = {
            **spec.headers,
            **self._auth_headers(spec, content),
            "Idempotency-Key": event.idempotency_key,
        }
        return await send_json(
            self._client,
            spec.http_method,
            spec.url,
            content=content,
            headers=headers,
            timeout_seconds=timeout_seconds,
            span_attributes={
                "hookline.destination_kind": self.kind,
                "hookline.event_id": event.event_id,
            },
        )
