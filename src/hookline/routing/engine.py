"""Rule snapshots, first-match evaluation, and copy-on-write publication.

Workers read ``RuleRegistry.current()`` once per event and evaluate against
that snapshot. Every change (enable, disable, reload) builds a new snapshot
and swaps the reference under a lock, so no reader ever sees a partially
updated rule set.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from hookline.models.events import CanonicalEvent, utc_now
from hookline.routing.rules import RoutingRule

logger = logging.getLogger(__name__)


class RuleConfigError(Exception):
    """Raised when a rule set is invalid or cannot be loaded."""


class UnknownRuleError(KeyError):
    """Raised when an operator action names a rule that does not exist."""


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable, priority-ordered rule set.

    Rules are sorted by ascending priority with a stable sort, so equal
    priorities keep registration order.
    """

    rules: tuple[RoutingRule, ...]
    generation: int = 0
    published_at: datetime = field(default_factory=utc_now)

    @classmethod
    def build(cls, rules: Iterable[RoutingRule], generation: int = 0) -> RuleSnapshot:
        ordered = list(rules)
        ids = [r.rule_id for r in ordered]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise RuleConfigError(f"Duplicate rule ids: {', '.join(duplicates)}")
        return cls(rules=tuple(sorted(ordered, key=lambda r: r.priority)), generation=generation)

    def get(self, rule_id: str) -> RoutingRule | None:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def replace(self, rule: RoutingRule) -> RuleSnapshot:
        """New snapshot with one rule swapped in place (generation + 1)."""
        rules = tuple(rule if r.rule_id == rule.rule_id else r for r in self.rules)
        return RuleSnapshot(rules=rules, generation=self.generation + 1)


@dataclass(frozen=True)
class RouteMatch:
    rule: RoutingRule
    generation: int


@dataclass(frozen=True)
class NoMatch:
    """No rule matched. Not an error: the event is logged and dropped."""

    generation: int


class RuleEngine:
    """Stateless first-match evaluator."""

    @staticmethod
    def match(event: CanonicalEvent, snapshot: RuleSnapshot) -> RouteMatch | NoMatch:
        for rule in snapshot.rules:
            if rule.matches(event):
                return RouteMatch(rule=rule, generation=snapshot.generation)
        return NoMatch(generation=snapshot.generation)

    @staticmethod
    def all_matches(event: CanonicalEvent, snapshot: RuleSnapshot) -> list[RoutingRule]:
        """Every matching rule in evaluation order (diagnostics only)."""
        return [rule for rule in snapshot.rules if rule.matches(event)]


RuleLoader = Callable[[], Sequence[RoutingRule]]


class RuleRegistry:
    """Process-wide holder of the current rule snapshot.

    Created at startup with an initial rule set and an optional loader used
    by ``reload``. There is no module-level instance; the registry is passed
    to the pipeline and the operator routes explicitly.
    """

    def __init__(
        self,
        rules: Iterable[RoutingRule] = (),
        loader: RuleLoader | None = None,
    ) -> None:
        self._snapshot = RuleSnapshot.build(rules)
        self._loader = loader
        self._lock = threading.Lock()

    def current(self) -> RuleSnapshot:
        return self._snapshot

    def publish(self, rules: Iterable[RoutingRule]) -> RuleSnapshot:
        """Publish a new rule set (generation + 1)."""
        with self._lock:
            snapshot = RuleSnapshot.build(rules, generation=self._snapshot.generation + 1)
            self._snapshot = snapshot
        logger.info(
            "Published rule snapshot generation=%d rules=%d",
            snapshot.generation,
            len(snapshot.rules),
        )
        return snapshot

    def _set_enabled(self, rule_id: str, enabled: bool) -> RuleSnapshot:
        with self._lock:
            rule = self._snapshot.get(rule_id)
            if rule is None:
                raise UnknownRuleError(rule_id)
            snapshot = self._snapshot.replace(rule.model_copy(update={"enabled": enabled}))
            self._snapshot = snapshot
        logger.info(
            "Rule %s %s (generation=%d)",
            rule_id,
            "enabled" if enabled else "disabled",
            snapshot.generation,
        )
        return snapshot

    def enable(self, rule_id: str) -> RuleSnapshot:
        return self._set_enabled(rule_id, True)

    def disable(self, rule_id: str) -> RuleSnapshot:
        return self._set_enabled(rule_id, False)

    def reload(self) -> RuleSnapshot:
        """Re-read rules from the loader and publish them.

        Raises:
            RuleConfigError: If no loader is configured or loading fails. The
                current snapshot stays in place.
        """
        if self._loader is None:
            raise RuleConfigError("No rule source configured for reload")
        rules = self._loader()
        return self.publish(rules)
