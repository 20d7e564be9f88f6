"""Per-source payload schema registry.

Schemas ship as package data next to this module. HOOKLINE_SCHEMA_DIR may
point at a replacement directory (for example a deployment that pins newer
provider schemas).

Completeness check: every enabled source must have a schema file that parses
as JSON and is a valid Draft 2020-12 schema.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import jsonschema
from jsonschema import Draft202012Validator

SCHEMA_DIR_ENV = "HOOKLINE_SCHEMA_DIR"
SCHEMA_SUFFIX = ".schema.json"

REQUIRED_SCHEMAS = frozenset({"ghl", "stripe", "retell", "twilio"})


class SchemaRegistryError(Exception):
    """Raised when a required schema is missing or unloadable."""


class SchemaRegistry:
    """Loads and caches source schemas by source name."""

    def __init__(self, schema_dir: str | Path | None = None) -> None:
        if schema_dir is not None:
            self._schema_dir = Path(schema_dir)
        elif os.environ.get(SCHEMA_DIR_ENV):
            self._schema_dir = Path(os.environ[SCHEMA_DIR_ENV])
        else:
            self._schema_dir = Path(__file__).resolve().parent
        self._cache: dict[str, dict[str, Any]] = {}

    @property
    def schema_dir(self) -> Path:
        return self._schema_dir

    def list_schemas(self) -> list[str]:
        """Source names with a schema file, sorted."""
        if not self._schema_dir.is_dir():
            return []
        return sorted(
            f.name[: -len(SCHEMA_SUFFIX)]
            for f in self._schema_dir.iterdir()
            if f.is_file() and f.name.endswith(SCHEMA_SUFFIX)
        )

    def load_schema(self, source: str) -> tuple[dict[str, Any] | None, str | None]:
        """Load and parse a source schema.

        Returns:
            Tuple of (parsed_schema, error_message). If error_message is not
            None, parsed_schema should be ignored.
        """
        if source in self._cache:
            return self._cache[source], None

        schema_path = self._schema_dir / f"{source}{SCHEMA_SUFFIX}"
        if not schema_path.is_file():
            return None, f"Schema file not found for source '{source}'"

        try:
            content = schema_path.read_text(encoding="utf-8")
            if not content.strip():
                return None, f"Schema file is empty for source '{source}'"
            schema = json.loads(content)
            Draft202012Validator.check_schema(schema)
        except json.JSONDecodeError as e:
            return None, f"Invalid JSON in schema for '{source}': {e}"
        except jsonschema.SchemaError as e:
            return None, f"Invalid schema for '{source}': {e.message}"
        except OSError as e:
            return None, f"Cannot read schema for '{source}': {e}"

        self._cache[source] = schema
        return schema, None

    def require(self, source: str) -> dict[str, Any]:
        """Load a schema or raise SchemaRegistryError."""
        schema, error = self.load_schema(source)
        if error is not None or schema is None:
            raise SchemaRegistryError(error or f"Schema unavailable for '{source}'")
        return schema

    def check_completeness(self, sources: Iterable[str] | None = None) -> dict[str, Any]:
        """Check that every required schema is present and loadable.

        Returns:
            Deterministic report: {"pass", "missing", "invalid", "schema_dir"}.
        """
        required = sorted(set(sources) if sources is not None else REQUIRED_SCHEMAS)
        present = set(self.list_schemas())
        missing = [s for s in required if s not in present]
        invalid = [
            s for s in required if s in present and self.load_schema(s)[1] is not None
        ]
        return {
            "invalid": invalid,
            "missing": missing,
            "pass": not missing and not invalid,
            "schema_dir": str(self._schema_dir),
        }
