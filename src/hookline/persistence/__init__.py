"""SQL persistence helpers shared by the SQL-backed stores."""

from hookline.persistence.db import (
    DatabaseConfigError,
    create_db_engine,
    ensure_schema,
    normalize_database_url,
)

__all__ = ["DatabaseConfigError", "create_db_engine", "ensure_schema", "normalize_database_url"]
