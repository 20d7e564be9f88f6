"""Tests for the predicate language, rule models, rule engine and rule loading.

Test coverage:
A) Predicate parsing and evaluation (never raises at evaluation time)
B) Rule conditions: sources, event types with wildcards, tenants
C) First-match by priority, ties in registration order, disabled rules skipped
D) Copy-on-write snapshots: enable/disable/reload bump the generation
E) YAML loading with aggregated validation errors
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from hookline.models.events import CanonicalEvent, OriginalPayload
from hookline.retry.policy import RetryPolicy
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
from hookline.routing.predicate import (
    Clause,
    Operator,
    PredicateError,
    parse_predicate,
    resolve_path,
)
from hookline.routing.rules import RoutingRule


def _event(
    source: str = "stripe",
    event_type: str = "invoice.paid",
    tenant_id: str | None = "acct_1",
    data: dict[str, Any] | None = None,
) -> CanonicalEvent:
    return CanonicalEvent(
        event_id="evt_1",
        source=source,
        event_type=event_type,
        received_at=datetime(2024, 1, 1, tzinfo=UTC),
        tenant_id=tenant_id,
        data=data or {},
        original=OriginalPayload(body=b"{}"),
    )


def _rule(rule_id: str, priority: int = 100, **conditions: Any) -> RoutingRule:
    return RoutingRule.model_validate(
        {
            "id": rule_id,
            "priority": priority,
            "conditions": conditions,
            "destination": {"kind": "workflow", "workflow_id": f"wf-{rule_id}"},
        }
    )


class TestPredicate:
    """Restricted predicate language."""

    def test_comparison_and_conjunction(self) -> None:
        """Clauses joined by 'and' must all hold."""
        predicate = parse_predicate("amount >= 100 and status == 'paid'")
        assert predicate.evaluate({"amount": 150, "status": "paid"})
        assert not predicate.evaluate({"amount": 50, "status": "paid"})
        assert not predicate.evaluate({"amount": 150, "status": "open"})

    def test_in_list(self) -> None:
        """'in' matches any list member."""
        predicate = parse_predicate("currency in ['usd', \"eur\"]")
        assert predicate.evaluate({"currency": "eur"})
        assert not predicate.evaluate({"currency": "gbp"})

    def test_empty_list(self) -> None:
        """'in []' never matches."""
        assert not parse_predicate("currency in []").evaluate({"currency": "usd"})

    def test_exists_and_null(self) -> None:
        """exists() is false for missing and null values; != null mirrors it."""
        exists = parse_predicate("exists(customer)")
        not_null = parse_predicate("email != null")
        assert exists.evaluate({"customer": "cus_1"})
        assert not exists.evaluate({"customer": None})
        assert not exists.evaluate({})
        assert not_null.evaluate({"email": "a@b.c"})
        assert not not_null.evaluate({"email": None})

    def test_dotted_path(self) -> None:
        """Dotted paths walk nested objects and list indexes."""
        predicate = parse_predicate("object.status == 'paid' and lines.0.amount > 10")
        data = {"object": {"status": "paid"}, "lines": [{"amount": 11}]}
        assert predicate.evaluate(data)

    def test_type_mismatch_is_false(self) -> None:
        """Comparing a string to a number is false, never an error."""
        predicate = parse_predicate("amount > 10")
        assert not predicate.evaluate({"amount": "100"})
        assert not predicate.evaluate({"amount": None})
        assert not predicate.evaluate({})

    def test_bool_is_not_a_number(self) -> None:
        """True does not equal 1."""
        assert not parse_predicate("flag == 1").evaluate({"flag": True})
        assert parse_predicate("flag == true").evaluate({"flag": True})

    def test_int_and_float_compare(self) -> None:
        """Numeric equality crosses int and float."""
        assert parse_predicate("amount == 10.0").evaluate({"amount": 10})

    def test_escaped_quote(self) -> None:
        """Backslash escapes inside string literals."""
        assert parse_predicate(r"name == 'o\'neil'").evaluate({"name": "o'neil"})

    def test_empty_text_matches_everything(self) -> None:
        """A blank predicate has no clauses."""
        assert parse_predicate("   ").evaluate({"anything": 1})

    @pytest.mark.parametrize(
        "text",
        [
            "amount >",
            "amount >= 10 or status == 'x'",
            "== 10",
            "amount ~ 10",
            "currency in ['usd'",
            "exists(customer",
            "amount >= foo",
            "__import__('os')",
        ],
    )
    def test_syntax_errors(self, text: str) -> None:
        """Malformed or unsupported expressions raise PredicateError."""
        with pytest.raises(PredicateError):
            parse_predicate(text)

    def test_clause_limit(self) -> None:
        """More than the clause limit is rejected."""
        text = " and ".join(f"f{i} == 1" for i in range(40))
        with pytest.raises(PredicateError):
            parse_predicate(text)

    def test_structured_clause_rejects_bad_path(self) -> None:
        """Structured clauses validate the field path."""
        with pytest.raises(ValueError):
            Clause(field="a..b", op=Operator.EQ, value=1)

    def test_resolve_path_out_of_range(self) -> None:
        """List index past the end is missing, so comparisons are false."""
        assert not Clause(field="items.3", op=Operator.EXISTS).evaluate({"items": [1]})
        assert resolve_path({"items": [1]}, "items.0") == 1


class TestRuleConditions:
    """Rule-level match conditions."""

    def test_empty_conditions_match_everything(self) -> None:
        """A rule without conditions matches any event."""
        assert _rule("catch-all").matches(_event())

    def test_sources_and_types(self) -> None:
        """Source and event type lists are conjunctive with each other."""
        rule = _rule("r", sources=["stripe"], event_types=["invoice.paid"])
        assert rule.matches(_event())
        assert not rule.matches(_event(source="ghl"))
        assert not rule.matches(_event(event_type="invoice.created"))

    def test_event_type_wildcard(self) -> None:
        """'invoice.*' matches every invoice type but not 'invoiced.x'."""
        rule = _rule("r", event_types=["invoice.*"])
        assert rule.matches(_event(event_type="invoice.payment_failed"))
        assert not rule.matches(_event(event_type="invoiced.paid"))

    def test_tenants(self) -> None:
        """Tenant list restricts by tenant_id."""
        rule = _rule("r", tenants=["acct_1"])
        assert rule.matches(_event())
        assert not rule.matches(_event(tenant_id="acct_2"))
        assert not rule.matches(_event(tenant_id=None))

    def test_when_text_and_structured(self) -> None:
        """'when' accepts the text form and the structured form."""
        text_rule = _rule("t", when="amount >= 100")
        structured = _rule("s", when=[{"field": "amount", "op": "gte", "value": 100}])
        event = _event(data={"amount": 100})
        assert text_rule.matches(event)
        assert structured.matches(event)
        assert not structured.matches(_event(data={"amount": 99}))

    def test_disabled_rule_never_matches(self) -> None:
        """enabled=False short-circuits matching."""
        rule = _rule("r").model_copy(update={"enabled": False})
        assert not rule.matches(_event())


class TestRuleModels:
    """Rule validation."""

    def test_async_alias_and_defaults(self) -> None:
        """YAML key 'async' maps to async_; defaults apply."""
        rule = RoutingRule.model_validate(
            {
                "id": "r",
                "async": False,
                "destination": {"kind": "service", "service": "crm", "method": "sync"},
            }
        )
        assert rule.async_ is False
        assert rule.priority == 100
        assert rule.timeout_seconds == 10.0
        assert rule.destination.kind == "service"

    def test_unknown_destination_kind(self) -> None:
        """Destination is a closed tagged union."""
        with pytest.raises(ValueError):
            RoutingRule.model_validate({"id": "r", "destination": {"kind": "ftp"}})

    def test_webhook_url_must_be_http(self) -> None:
        """Webhook destinations need an http(s) URL."""
        with pytest.raises(ValueError):
            RoutingRule.model_validate(
                {"id": "r", "destination": {"kind": "webhook", "url": "file:///etc/passwd"}}
            )

    def test_basic_auth_requires_username(self) -> None:
        """Basic auth without a username is rejected."""
        with pytest.raises(ValueError):
            RoutingRule.model_validate(
                {
                    "id": "r",
                    "destination": {
                        "kind": "webhook",
                        "url": "https://example.com/hook",
                        "auth": {"type": "basic", "secret_env": "HOOK_PASS"},
                    },
                }
            )

    def test_retry_override(self) -> None:
        """A rule may carry its own retry policy."""
        rule = RoutingRule.model_validate(
            {
                "id": "r",
                "destination": {"kind": "workflow", "workflow_id": "wf"},
                "retry": {"max_attempts": 5, "base_seconds": 0.5},
            }
        )
        assert rule.retry == RetryPolicy(max_attempts=5, base_seconds=0.5)

    def test_unknown_field_rejected(self) -> None:
        """Typos in rule files are errors, not silently ignored."""
        with pytest.raises(ValueError):
            RoutingRule.model_validate(
                {"id": "r", "priorty": 1, "destination": {"kind": "workflow", "workflow_id": "w"}}
            )


class TestRuleEngine:
    """First-match evaluation over a snapshot."""

    def test_lowest_priority_wins(self) -> None:
        """Rules are evaluated by ascending priority."""
        snapshot = RuleSnapshot.build([_rule("late", 50), _rule("early", 10)])
        result = RuleEngine.match(_event(), snapshot)
        assert isinstance(result, RouteMatch)
        assert result.rule.rule_id == "early"

    def test_ties_keep_registration_order(self) -> None:
        """Equal priorities keep the order rules were registered in."""
        snapshot = RuleSnapshot.build([_rule("first", 10), _rule("second", 10)])
        result = RuleEngine.match(_event(), snapshot)
        assert isinstance(result, RouteMatch)
        assert result.rule.rule_id == "first"

    def test_no_match(self) -> None:
        """No matching rule yields NoMatch with the snapshot generation."""
        snapshot = RuleSnapshot.build([_rule("ghl-only", sources=["ghl"])], generation=4)
        result = RuleEngine.match(_event(), snapshot)
        assert result == NoMatch(generation=4)

    def test_all_matches(self) -> None:
        """all_matches lists every match in evaluation order."""
        rules = [_rule("b", 20), _rule("a", 10), _rule("x", 5, sources=["ghl"])]
        snapshot = RuleSnapshot.build(rules)
        assert [r.rule_id for r in RuleEngine.all_matches(_event(), snapshot)] == ["a", "b"]

    def test_duplicate_ids_rejected(self) -> None:
        """Rule ids are unique within a snapshot."""
        with pytest.raises(RuleConfigError):
            RuleSnapshot.build([_rule("dup"), _rule("dup")])


class TestRuleRegistry:
    """Copy-on-write publication."""

    def test_disable_publishes_new_snapshot(self) -> None:
        """Disabling swaps in a new snapshot; the old one is untouched."""
        registry = RuleRegistry([_rule("a", 10), _rule("b", 20)])
        before = registry.current()

        after = registry.disable("a")

        assert after.generation == before.generation + 1
        assert registry.current() is after
        assert before.get("a").enabled is True  # type: ignore[union-attr]
        result = RuleEngine.match(_event(), after)
        assert isinstance(result, RouteMatch)
        assert result.rule.rule_id == "b"

    def test_enable_restores_rule(self) -> None:
        """Enable after disable routes to the rule again."""
        registry = RuleRegistry([_rule("a")])
        registry.disable("a")
        snapshot = registry.enable("a")
        assert snapshot.generation == 2
        assert isinstance(RuleEngine.match(_event(), snapshot), RouteMatch)

    def test_unknown_rule(self) -> None:
        """Operator actions on unknown ids raise UnknownRuleError."""
        with pytest.raises(UnknownRuleError):
            RuleRegistry().disable("nope")

    def test_reload_without_loader(self) -> None:
        """Reload needs a configured loader."""
        with pytest.raises(RuleConfigError):
            RuleRegistry().reload()

    def test_failed_reload_keeps_current_snapshot(self) -> None:
        """A loader error leaves the published snapshot in place."""

        def broken() -> list[RoutingRule]:
            raise RuleConfigError("bad file")

        registry = RuleRegistry([_rule("a")], loader=broken)
        before = registry.current()
        with pytest.raises(RuleConfigError):
            registry.reload()
        assert registry.current() is before

    def test_readers_never_see_partial_updates(self) -> None:
        """Concurrent readers always see a snapshot with both rules present."""
        registry = RuleRegistry([_rule("a", 10), _rule("b", 20)])
        stop = threading.Event()
        bad: list[int] = []

        def reader() -> None:
            while not stop.is_set():
                snapshot = registry.current()
                if len(snapshot.rules) != 2:
                    bad.append(snapshot.generation)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for _ in range(200):
            registry.disable("a")
            registry.enable("a")
        stop.set()
        for t in threads:
            t.join()

        assert bad == []
        assert registry.current().generation == 400


RULES_YAML = """
rules:
  - id: ghl-contact-created
    priority: 10
    conditions:
      sources: [ghl]
      event_types: [contact.created]
      when: "email != null"
    destination:
      kind: workflow
      workflow_id: onboard-contact
    async: false
    timeout_seconds: 5
  - id: stripe-invoices
    priority: 20
    conditions:
      sources: [stripe]
      event_types: ["invoice.*"]
    destination:
      kind: webhook
      url: https://billing.example.com/hooks
      auth:
        type: hmac
        secret_env: BILLING_HOOK_SECRET
"""


class TestRuleLoader:
    """YAML rule files."""

    def test_load_file(self, tmp_path: Path) -> None:
        """A valid file produces validated rules."""
        path = tmp_path / "rules.yaml"
        path.write_text(RULES_YAML, encoding="utf-8")
        rules = load_rules_file(path)
        assert [r.rule_id for r in rules] == ["ghl-contact-created", "stripe-invoices"]
        assert rules[0].async_ is False
        assert rules[1].destination.kind == "webhook"

    def test_bare_list_and_empty_document(self) -> None:
        """Both a bare list and an empty document are accepted."""
        assert parse_rules(None) == []
        rules = parse_rules([{"id": "x", "destination": {"kind": "workflow", "workflow_id": "w"}}])
        assert len(rules) == 1

    def test_errors_are_aggregated(self) -> None:
        """Every invalid rule is reported in one error."""
        document = {
            "rules": [
                {"id": "ok", "destination": {"kind": "workflow", "workflow_id": "w"}},
                {"id": "bad-when", "conditions": {"when": "amount >"},
                 "destination": {"kind": "workflow", "workflow_id": "w"}},
                {"destination": {"kind": "workflow", "workflow_id": "w"}},
            ]
        }
        with pytest.raises(RuleConfigError) as exc_info:
            parse_rules(document, origin="rules.yaml")
        message = str(exc_info.value)
        assert "rules[1]" in message
        assert "rules[2]" in message
        assert "rules[0]" not in message

    def test_wrong_document_shape(self) -> None:
        """A scalar document is rejected."""
        with pytest.raises(RuleConfigError):
            parse_rules("rules")

    def test_missing_and_malformed_files(self, tmp_path: Path) -> None:
        """Unreadable and unparsable files raise RuleConfigError."""
        with pytest.raises(RuleConfigError):
            load_rules_file(tmp_path / "missing.yaml")
        bad = tmp_path / "bad.yaml"
        bad.write_text("rules: [unclosed", encoding="utf-8")
        with pytest.raises(RuleConfigError):
            load_rules_file(bad)

    def test_registry_reload_from_file(self, tmp_path: Path) -> None:
        """Reload picks up file changes as a new generation."""
        path = tmp_path / "rules.yaml"
        path.write_text(RULES_YAML, encoding="utf-8")
        loader = file_loader(path)
        registry = RuleRegistry(loader(), loader=loader)

        path.write_text(
            "rules:\n  - id: only\n    destination: {kind: workflow, workflow_id: w}\n",
            encoding="utf-8",
        )
        snapshot = registry.reload()

        assert snapshot.generation == 1
        assert [r.rule_id for r in snapshot.rules] == ["only"]
