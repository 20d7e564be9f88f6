"""Tests for the schema registry and the schema validator.

Test coverage:
A) Every shipped schema is present and a valid Draft 2020-12 schema
B) Valid payloads pass for each source
C) All violations are collected, with JSON paths
D) Fail-closed behavior for missing or broken schemas
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from hookline.errors import ErrorClass, SchemaValidationError, Stage
from hookline.schemas.registry import (
    REQUIRED_SCHEMAS,
    SCHEMA_DIR_ENV,
    SchemaRegistry,
    SchemaRegistryError,
)
from hookline.validation.schema_validator import SchemaValidator


class TestSchemaRegistry:
    """Packaged schema registry."""

    def test_shipped_schemas_are_complete(self) -> None:
        """Every required source has a loadable schema."""
        report = SchemaRegistry().check_completeness()
        assert report["pass"] is True
        assert report["missing"] == []
        assert report["invalid"] == []

    def test_list_schemas(self) -> None:
        """list_schemas returns source names, sorted."""
        assert SchemaRegistry().list_schemas() == sorted(REQUIRED_SCHEMAS)

    def test_missing_schema_reported(self, tmp_path: Path) -> None:
        """An empty schema directory reports every source as missing."""
        report = SchemaRegistry(tmp_path).check_completeness(["ghl", "stripe"])
        assert report["pass"] is False
        assert report["missing"] == ["ghl", "stripe"]

    def test_invalid_json_reported(self, tmp_path: Path) -> None:
        """A file that is not JSON is reported as invalid."""
        (tmp_path / "ghl.schema.json").write_text("{not json", encoding="utf-8")
        registry = SchemaRegistry(tmp_path)
        schema, error = registry.load_schema("ghl")
        assert schema is None
        assert error is not None and "Invalid JSON" in error
        assert registry.check_completeness(["ghl"])["invalid"] == ["ghl"]

    def test_invalid_schema_reported(self, tmp_path: Path) -> None:
        """JSON that is not a valid schema is rejected."""
        (tmp_path / "ghl.schema.json").write_text('{"type": 12}', encoding="utf-8")
        _, error = SchemaRegistry(tmp_path).load_schema("ghl")
        assert error is not None and "Invalid schema" in error

    def test_require_raises(self, tmp_path: Path) -> None:
        """require raises SchemaRegistryError for a missing schema."""
        with pytest.raises(SchemaRegistryError):
            SchemaRegistry(tmp_path).require("ghl")

    def test_schema_dir_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """HOOKLINE_SCHEMA_DIR replaces the packaged directory."""
        monkeypatch.setenv(SCHEMA_DIR_ENV, str(tmp_path))
        assert SchemaRegistry().schema_dir == tmp_path


class TestSchemaValidator:
    """Structural validation per source."""

    @pytest.mark.parametrize(
        ("source", "fixture"),
        [
            ("ghl", "ghl_payload"),
            ("stripe", "stripe_payload"),
            ("retell", "retell_payload"),
            ("twilio", "twilio_payload"),
        ],
    )
    def test_valid_payloads_pass(
        self, source: str, fixture: str, request: pytest.FixtureRequest
    ) -> None:
        """Representative payloads validate cleanly."""
        payload = request.getfixturevalue(fixture)
        result = SchemaValidator().validate(source, payload)
        assert result.passed, result.errors

    def test_all_violations_collected(self, ghl_payload: dict[str, Any]) -> None:
        """Every violation is reported, not just the first."""
        del ghl_payload["locationId"]
        ghl_payload["type"] = "NotAType"
        ghl_payload["email"] = "not-an-email"

        result = SchemaValidator().validate("ghl", ghl_payload)

        assert not result.passed
        codes = {(v.code, v.path) for v in result.errors}
        assert ("required", "$") in codes
        assert ("enum", "$.type") in codes
        assert ("pattern", "$.email") in codes

    def test_nested_path(self, stripe_payload: dict[str, Any]) -> None:
        """Nested violations carry a JSON path to the field."""
        stripe_payload["data"] = {"previous_attributes": {}}
        result = SchemaValidator().validate("stripe", stripe_payload)
        assert [v.path for v in result.errors] == ["$.data"]

    def test_array_index_in_path(self, ghl_payload: dict[str, Any]) -> None:
        """Array positions appear as [n] in the path."""
        ghl_payload["tags"] = ["ok", 7]
        result = SchemaValidator().validate("ghl", ghl_payload)
        assert [v.path for v in result.errors] == ["$.tags[1]"]

    def test_twilio_requires_message_or_call(self, twilio_payload: dict[str, Any]) -> None:
        """A callback with neither message nor call status fails anyOf."""
        del twilio_payload["MessageSid"]
        del twilio_payload["MessageStatus"]
        result = SchemaValidator().validate("twilio", twilio_payload)
        assert not result.passed
        assert result.errors[0].code == "anyOf"

    def test_unknown_source_fails_closed(self) -> None:
        """A source without a schema rejects every payload."""
        result = SchemaValidator().validate("acme", {"anything": True})
        assert not result.passed
        assert result.errors[0].code == "FAIL_CLOSED"

    def test_none_fails_closed(self) -> None:
        """None is never valid."""
        result = SchemaValidator().validate("ghl", None)
        assert not result.passed
        assert result.errors[0].code == "FAIL_CLOSED"

    def test_check_raises_with_violations(self, ghl_payload: dict[str, Any]) -> None:
        """check raises a permanent SchemaValidationError carrying every violation."""
        del ghl_payload["type"]
        del ghl_payload["locationId"]
        with pytest.raises(SchemaValidationError) as exc_info:
            SchemaValidator().check("ghl", ghl_payload)
        error = exc_info.value
        assert error.error_class is ErrorClass.PERMANENT
        assert error.stage is Stage.VALIDATE
        assert len(error.violations) == 2
        assert all(set(v) == {"code", "message", "path"} for v in error.violations)
