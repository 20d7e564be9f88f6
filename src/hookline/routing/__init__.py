"""Routing rules, predicates and the rule engine."""

from hookline.routing.engine import (
    NoMatch,
    RouteMatch,
    RuleConfigError,
    RuleEngine,
    RuleRegistry,
    RuleSnapshot,
    UnknownRuleError,
)
from hookline.routing.loader import file_loader, load_rules_file, parse_rules
from hookline.routing.predicate import Clause, Operator, Predicate, PredicateError, parse_predicate
from hookline.routing.rules import (
    RoutingRule,
    RuleConditions,
    ServiceDestinationSpec,
    WebhookAuth,
    WebhookDestinationSpec,
    WorkflowDestinationSpec,
)

__all__ = [
    "Clause",
    "NoMatch",
    "Operator",
    "Predicate",
    "PredicateError",
    "RouteMatch",
    "RoutingRule",
    "RuleConditions",
    "RuleConfigError",
    "RuleEngine",
    "RuleRegistry",
    "RuleSnapshot",
    "ServiceDestinationSpec",
    "UnknownRuleError",
    "WebhookAuth",
    "WebhookDestinationSpec",
    "WorkflowDestinationSpec",
    "file_loader",
    "load_rules_file",
    "parse_predicate",
    "parse_rules",
]
