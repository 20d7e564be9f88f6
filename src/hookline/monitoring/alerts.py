"""Prometheus-compatible alert rules over the ingress counters.

The pipeline only exposes counters. These specs describe how an external
alerting stack should read them:
- DLQ growth: more than N new dead-lettered events per interval (SEV-2)
- Per-source error rate above threshold (SEV-2)
- Signature failure burst from one source (SEV-1)

Metric names follow ``hookline_<counter>_total`` with a ``source`` label,
plus ``hookline_dlq_new_in_interval`` as a gauge.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Severity = Literal["SEV-1", "SEV-2", "SEV-3"]

REQUIRED_ANNOTATIONS = ("summary", "description")


class MonitoringValidationError(Exception):
    """Raised when an alert rule collection is invalid."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class AlertRuleSpec(BaseModel):
    """One Prometheus alert rule."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z][A-Za-z0-9_]+$")
    severity: Severity
    expr: str = Field(..., min_length=1)
    for_duration: str = Field(..., pattern=r"^\d+[smh]$")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("expr")
    @classmethod
    def no_empty_expr(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Expression cannot be empty or whitespace-only")
        return v

    @model_validator(mode="after")
    def require_annotations(self) -> AlertRuleSpec:
        missing = [a for a in REQUIRED_ANNOTATIONS if a not in self.annotations]
        if missing:
            raise ValueError(f"Missing required annotation(s): {', '.join(missing)}")
        return self

    def to_prometheus_rule(self) -> dict[str, Any]:
        labels = {"severity": self.severity, **self.labels}
        return {
            "alert": self.name,
            "annotations": dict(sorted(self.annotations.items())),
            "expr": self.expr,
            "for": self.for_duration,
            "labels": dict(sorted(labels.items())),
        }


def dlq_growth_alert(max_new_entries: int = 10, interval: str = "5m") -> AlertRuleSpec:
    return AlertRuleSpec(
        name="HooklineDLQGrowth",
        severity="SEV-2",
        expr=f"hookline_dlq_new_in_interval > {max_new_entries}",
        for_duration=interval,
        labels={"component": "retry"},
        annotations={
            "summary": f"More than {max_new_entries} events dead-lettered in {interval}",
            "description": (
                "Events are exhausting retries or failing permanently faster than usual. "
                "Check destination health and recent routing rule changes."
            ),
        },
    )


def source_error_rate_alert(threshold_percent: float = 5.0) -> AlertRuleSpec:
    """Alert on failed or rejected deliveries as a share of received, per source."""
    failures = (
        "hookline_rejected_signature_total",
        "hookline_rejected_schema_total",
        "hookline_failed_transient_total",
        "hookline_failed_permanent_total",
    )
    numerator = " + ".join(f"sum by (source) (rate({m}[15m]))" for m in failures)
    return AlertRuleSpec(
        name="HooklineSourceErrorRate",
        severity="SEV-2",
        expr=(
            f"(({numerator}) / sum by (source) (rate(hookline_received_total[15m])))"
            f" * 100 > {threshold_percent:g}"
        ),
        for_duration="15m",
        labels={"component": "ingress"},
        annotations={
            "summary": (
                f"Error rate above {threshold_percent:g}% for source {{{{ $labels.source }}}}"
            ),
            "description": (
                'Current rate: {{ $value | printf "%.2f" }}%. '
                "Check the platform's payload format, signing secret and destination health."
            ),
        },
    )


def signature_failure_burst_alert(threshold: int = 3, window: str = "5m") -> AlertRuleSpec:
    return AlertRuleSpec(
        name="HooklineSignatureFailureBurst",
        severity="SEV-1",
        expr=(
            f"sum by (source) (increase(hookline_rejected_signature_total[{window}]))"
            f" >= {threshold}"
        ),
        for_duration="1m",
        labels={"component": "verification"},
        annotations={
            "summary": "Repeated signature failures from {{ $labels.source }}",
            "description": (
                f"{threshold} or more deliveries failed signature verification within "
                f"{window}. Possible forged traffic or a rotated secret."
            ),
        },
    )


def get_core_alerts() -> tuple[AlertRuleSpec, ...]:
    """Core alert rules in deterministic order."""
    return (
        dlq_growth_alert(),
        source_error_rate_alert(),
        signature_failure_burst_alert(),
    )


def validate_alert_specs(alerts: tuple[AlertRuleSpec, ...]) -> None:
    """Check a collection for emptiness and duplicate names.

    Raises:
        MonitoringValidationError: If validation fails.
    """
    if not alerts:
        raise MonitoringValidationError("Alert collection cannot be empty")

    errors: list[str] = []
    seen: set[str] = set()
    for alert in alerts:
        if alert.name in seen:
            errors.append(f"Duplicate alert name: '{alert.name}'")
        seen.add(alert.name)

    if errors:
        raise MonitoringValidationError(
            f"Alert validation failed with {len(errors)} error(s)", errors=errors
        )


def render_prometheus_rule_groups(
    alerts: tuple[AlertRuleSpec, ...] | None = None,
) -> list[dict[str, Any]]:
    """Group rules by severity, most severe first; empty groups are omitted."""
    alerts = alerts if alerts is not None else get_core_alerts()
    group_names = {
        "SEV-1": "hookline-critical-alerts",
        "SEV-2": "hookline-high-alerts",
        "SEV-3": "hookline-medium-alerts",
    }
    groups: list[dict[str, Any]] = []
    for severity, group_name in group_names.items():
        rules = [a.to_prometheus_rule() for a in alerts if a.severity == severity]
        if rules:
            groups.append({"name": group_name, "rules": rules})
    return groups


def export_prometheus_rules(path: Path, alerts: tuple[AlertRuleSpec, ...] | None = None) -> Path:
    """Write the rules as a Prometheus rules YAML file.

    Raises:
        MonitoringValidationError: If validation fails before export.
    """
    alerts = alerts if alerts is not None else get_core_alerts()
    validate_alert_specs(alerts)

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.dump(
            {"groups": render_prometheus_rule_groups(alerts)},
            f,
            default_flow_style=False,
            sort_keys=True,
            allow_unicode=True,
            width=120,
        )
    return path
