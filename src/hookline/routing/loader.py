"""YAML rule file loading.

File format:

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
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from hookline.routing.engine import RuleConfigError
from hookline.routing.rules import RoutingRule


def parse_rules(document: Any, origin: str = "<rules>") -> list[RoutingRule]:
    """Validate a parsed rule document.

    Raises:
        RuleConfigError: With every rule's validation errors.
    """
    if document is None:
        return []
    if isinstance(document, dict):
        document = document.get("rules", [])
    if not isinstance(document, list):
        raise RuleConfigError(f"{origin}: expected a list of rules or a 'rules' key")

    rules: list[RoutingRule] = []
    problems: list[str] = []
    for index, item in enumerate(document):
        try:
            rules.append(RoutingRule.model_validate(item))
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err["loc"])
                problems.append(f"rules[{index}].{loc}: {err['msg']}")

    if problems:
        raise RuleConfigError(f"{origin}: invalid rules:\n  " + "\n  ".join(problems))
    return rules


def load_rules_file(path: str | Path) -> list[RoutingRule]:
    """Load and validate a YAML rule file.

    Raises:
        RuleConfigError: If the file is missing, unparsable, or invalid.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise RuleConfigError(f"Cannot read rule file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise RuleConfigError(f"Invalid YAML in rule file {path}: {e}") from e
    return parse_rules(document, origin=str(path))


def file_loader(path: str | Path) -> Callable[[], list[RoutingRule]]:
    """Loader callable for RuleRegistry.reload."""

    def _load() -> list[RoutingRule]:
        return load_rules_file(path)

    return _load
