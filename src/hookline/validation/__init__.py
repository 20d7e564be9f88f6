"""Payload validation."""

from hookline.validation.schema_validator import SchemaValidator, ValidationResult, Violation

__all__ = ["SchemaValidator", "ValidationResult", "Violation"]
