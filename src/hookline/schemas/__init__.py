"""Per-source JSON schemas and their registry."""

from hookline.schemas.registry import REQUIRED_SCHEMAS, SchemaRegistry, SchemaRegistryError

__all__ = ["REQUIRED_SCHEMAS", "SchemaRegistry", "SchemaRegistryError"]
