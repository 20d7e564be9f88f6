"""Routing rule models.

Rules are plain data validated with Pydantic. Destination is a tagged union
on ``kind`` so a rule file cannot describe a destination the invoker does not
know how to call. Webhook credentials are referenced by environment variable
name; rule files never contain secrets.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hookline.models.events import CanonicalEvent
from hookline.retry.policy import RetryPolicy
from hookline.routing.predicate import Predicate, parse_predicate

DEFAULT_TIMEOUT_SECONDS = 10.0


class RuleConditions(BaseModel):
    """Conjunctive match conditions. An empty list matches any value.

    event_types entries may end in ``.*`` to match every type under a noun.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sources: tuple[str, ...] = ()
    event_types: tuple[str, ...] = ()
    tenants: tuple[str, ...] = ()
    when: Predicate | None = None

    @field_validator("when", mode="before")
    @classmethod
    def _parse_when(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_predicate(value)
        if isinstance(value, list):
            return {"clauses": value}
        return value

    def _event_type_matches(self, event_type: str) -> bool:
        for pattern in self.event_types:
            if pattern.endswith(".*"):
                if event_type.startswith(pattern[:-1]):
                    return True
            elif pattern == event_type:
                return True
        return False

    def matches(self, event: CanonicalEvent) -> bool:
        if self.sources and event.source not in self.sources:
            return False
        if self.event_types and not self._event_type_matches(event.event_type):
            return False
        if self.tenants and event.tenant_id not in self.tenants:
            return False
        return self.when is None or self.when.evaluate(event.data)


class WorkflowDestinationSpec(BaseModel):
    """Invoke a named orchestrator workflow with a parameter map."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["workflow"] = "workflow"
    workflow_id: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ServiceDestinationSpec(BaseModel):
    """Call a named internal service method with a parameter map."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["service"] = "service"
    service: str = Field(..., min_length=1)
    method: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)


class WebhookAuth(BaseModel):
    """Outbound auth. Secrets are read from the named environment variables."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["bearer", "basic", "hmac"]
    secret_env: str = Field(..., min_length=1)
    username: str | None = None

    @model_validator(mode="after")
    def _basic_needs_username(self) -> WebhookAuth:
        if self.type == "basic" and not self.username:
            raise ValueError("basic auth requires username")
        return self


class WebhookDestinationSpec(BaseModel):
    """HTTP POST/PUT to an external URL."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["webhook"] = "webhook"
    url: str = Field(..., pattern=r"^https?://")
    http_method: Literal["POST", "PUT"] = "POST"
    auth: WebhookAuth | None = None
    headers: dict[str, str] = Field(default_factory=dict)


DestinationSpec = Annotated[
    WorkflowDestinationSpec | ServiceDestinationSpec | WebhookDestinationSpec,
    Field(discriminator="kind"),
]


class RoutingRule(BaseModel):
    """Priority-ordered predicate-to-destination mapping.

    Attributes:
        rule_id: Stable identifier used by operator actions and audit records.
        priority: Lower sorts first. Ties keep registration order.
        conditions: Conjunctive match conditions.
        destination: Where matched events go.
        async_: Dispatch off the request path (YAML key ``async``).
        timeout_seconds: Per-call timeout; exceeding it is transient.
        retry: Optional override of the default retry policy.
        enabled: Disabled rules never match.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    rule_id: str = Field(..., min_length=1, alias="id")
    priority: int = 100
    description: str | None = None
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    destination: DestinationSpec
    async_: bool = Field(default=True, alias="async")
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    retry: RetryPolicy | None = None
    enabled: bool = True

    def matches(self, event: CanonicalEvent) -> bool:
        return self.enabled and self.conditions.matches(event)

    def summary(self) -> dict[str, Any]:
        """Operator listing form."""
        return {
            "id": self.rule_id,
            "priority": self.priority,
            "enabled": self.enabled,
            "async": self.async_,
            "destination": self.destination.kind,
            "timeout_seconds": self.timeout_seconds,
            "description": self.description,
        }
