"""Ingress counters and the alert rules that read them."""

from hookline.monitoring.alerts import (
    AlertRuleSpec,
    MonitoringValidationError,
    export_prometheus_rules,
    get_core_alerts,
    render_prometheus_rule_groups,
    validate_alert_specs,
)
from hookline.monitoring.counters import Counter, IngressCounters

__all__ = [
    "AlertRuleSpec",
    "Counter",
    "IngressCounters",
    "MonitoringValidationError",
    "export_prometheus_rules",
    "get_core_alerts",
    "render_prometheus_rule_groups",
    "validate_alert_specs",
]
