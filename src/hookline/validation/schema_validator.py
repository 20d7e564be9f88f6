"""Structural validation of verified payloads against source schemas.

Validation collects every violation, never just the first, and fails closed:
a source without a loadable schema rejects every payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator

from hookline.errors import SchemaValidationError
from hookline.schemas.registry import SchemaRegistry


@dataclass(frozen=True)
class Violation:
    """A single schema violation."""

    code: str
    message: str
    path: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "path": self.path}


@dataclass
class ValidationResult:
    """Result of validation - fail-closed by default."""

    passed: bool
    errors: list[Violation] = field(default_factory=list)

    @classmethod
    def fail(cls, errors: list[Violation]) -> ValidationResult:
        return cls(passed=False, errors=errors)

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(passed=True)

    @classmethod
    def fail_closed(cls, reason: str) -> ValidationResult:
        """Single-error failure used when validation cannot proceed."""
        return cls(
            passed=False,
            errors=[Violation(code="FAIL_CLOSED", message=reason, path="$")],
        )


def _json_path(parts: Any) -> str:
    return "$" + "".join(f".{p}" if isinstance(p, str) else f"[{p}]" for p in parts)


class SchemaValidator:
    """Validates payloads against the schema registered for their source."""

    def __init__(self, registry: SchemaRegistry | None = None) -> None:
        self._registry = registry or SchemaRegistry()
        self._validators: dict[str, Draft202012Validator] = {}

    def _get_validator(self, source: str) -> Draft202012Validator | None:
        if source in self._validators:
            return self._validators[source]

        schema, error = self._registry.load_schema(source)
        if error is not None or schema is None:
            return None

        validator = Draft202012Validator(schema)
        self._validators[source] = validator
        return validator

    def validate(self, source: str, data: Any) -> ValidationResult:
        """Validate data against the source schema.

        Returns:
            ValidationResult with every violation, sorted by path.
        """
        if data is None:
            return ValidationResult.fail_closed("Data is None - cannot validate")

        validator = self._get_validator(source)
        if validator is None:
            return ValidationResult.fail_closed(
                f"Cannot load schema for source '{source}' - validation fails closed"
            )

        errors = [
            Violation(
                code=str(error.validator),
                message=error.message,
                path=_json_path(error.absolute_path),
            )
            for error in validator.iter_errors(data)
        ]
        if errors:
            errors.sort(key=lambda v: (v.path, v.code))
            return ValidationResult.fail(errors)
        return ValidationResult.success()

    def check(self, source: str, data: Any) -> None:
        """Validate and raise on failure.

        Raises:
            SchemaValidationError: Carrying every violation. Permanent.
        """
        result = self.validate(source, data)
        if not result.passed:
            raise SchemaValidationError(source, [v.to_dict() for v in result.errors])
