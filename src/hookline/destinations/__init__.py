"""Destination implementations and the invoker."""

from hookline.destinations.base import (
    Destination,
    InvocationResult,
    event_envelope,
    sanitize_url,
)
from hookline.destinations.http import (
    ExternalWebhookDestination,
    ServiceDestination,
    ServiceTokenProvider,
    StaticServiceTokenProvider,
    WorkflowDestination,
)
from hookline.destinations.invoker import DestinationInvoker, build_invoker

__all__ = [
    "Destination",
    "DestinationInvoker",
    "ExternalWebhookDestination",
    "InvocationResult",
    "ServiceDestination",
    "ServiceTokenProvider",
    "StaticServiceTokenProvider",
    "WorkflowDestination",
    "build_invoker",
    "event_envelope",
    "sanitize_url",
]
