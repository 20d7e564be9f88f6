"""Destination invoker.

Selects the implementation registered for the rule's destination kind and
enforces the rule timeout. Exceeding the timeout cancels the in-flight call
and is reported as a transient DestinationTimeoutError. The invoker never
retries; failures go back to the pipeline for the retry queue to decide.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

import httpx

from hookline.config import Settings
from hookline.destinations.base import Destination, InvocationResult
from hookline.destinations.http import (
    ExternalWebhookDestination,
    ServiceDestination,
    ServiceTokenProvider,
    StaticServiceTokenProvider,
    WorkflowDestination,
)
from hookline.errors import DestinationError, DestinationTimeoutError, ErrorClass
from hookline.models.events import CanonicalEvent
from hookline.routing.rules import RoutingRule

logger = logging.getLogger(__name__)


class DestinationInvoker:
    """Uniform entry point over {kind -> Destination}."""

    def __init__(self, destinations: Mapping[str, Destination]) -> None:
        self._destinations = dict(destinations)

    @property
    def kinds(self) -> frozenset[str]:
        return frozenset(self._destinations)

    async def invoke(self, rule: RoutingRule, event: CanonicalEvent) -> InvocationResult:
        """Call the rule's destination within its timeout.

        Raises:
            DestinationTimeoutError: If the call exceeds rule.timeout_seconds.
            DestinationError: On classified destination failure.
        """
        spec = rule.destination
        destination = self._destinations.get(spec.kind)
        if destination is None:
            raise DestinationError(
                f"no destination registered for kind '{spec.kind}'", ErrorClass.PERMANENT
            )

        try:
            result = await asyncio.wait_for(
                destination.invoke(spec, event, rule.timeout_seconds),
                timeout=rule.timeout_seconds,
            )
        except TimeoutError as e:
            raise DestinationTimeoutError(rule.timeout_seconds) from e

        logger.info(
            "Delivered %s to %s destination via rule %s (status=%d, %dms)",
            event.idempotency_key,
            spec.kind,
            rule.rule_id,
            result.status_code,
            result.duration_ms,
        )
        return result


def build_invoker(
    settings: Settings,
    client: httpx.AsyncClient,
    tokens: ServiceTokenProvider | None = None,
) -> DestinationInvoker:
    """Invoker wired with the three HTTP destination kinds."""
    tokens = tokens or StaticServiceTokenProvider(settings.service_token)
    return DestinationInvoker(
        {
            "workflow": WorkflowDestination(client, settings.orchestrator_url, tokens),
            "service": ServiceDestination(client, settings.services_url, tokens),
            "webhook": ExternalWebhookDestination(client),
        }
    )
