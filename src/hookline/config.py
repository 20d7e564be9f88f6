"""Environment-driven settings for hookline.

All settings are read once at startup into an immutable Settings object.
Invalid values fail closed with ConfigError; unset values use the defaults
below.

Environment Variables:
    HOOKLINE_SOURCES: Comma-separated enabled sources (default: ghl,stripe,retell,twilio)
    HOOKLINE_SECRET_<SOURCE>: Per-source verification secret
    HOOKLINE_SCHEME_<SOURCE>: Override verification scheme ("bearer")
    HOOKLINE_PUBLIC_BASE_URL: Externally visible base URL (Twilio URL signing)
    HOOKLINE_IDEMPOTENCY_TTL_SECONDS: Duplicate window (default: 86400)
    HOOKLINE_FRESHNESS_TOLERANCE_SECONDS: Timestamp tolerance, 0 disables (default: 300)
    HOOKLINE_IDEMPOTENCY_BACKEND: memory | sqlite | redis | sql (default: memory)
    HOOKLINE_IDEMPOTENCY_DB_PATH: SQLite path for the sqlite backend
    HOOKLINE_REDIS_URL: Redis URL for the redis backend
    HOOKLINE_DATABASE_URL: SQLAlchemy URL for sql-backed stores
    HOOKLINE_AUDIT_LOG_PATH: JSONL audit log path
    HOOKLINE_RULES_PATH: YAML routing rule file
    HOOKLINE_RETRY_BASE_SECONDS / _MULTIPLIER / _MAX_ATTEMPTS / _MAX_DELAY_SECONDS
    HOOKLINE_RETRY_CONCURRENCY: Max concurrent retry attempts (default: 4)
    HOOKLINE_RETRY_RATE_PER_SECOND: Retry dispatch rate cap (default: 10)
    HOOKLINE_RATE_LIMIT_RPM / HOOKLINE_RATE_LIMIT_BURST_MULTIPLIER: Inbound limits
    HOOKLINE_AUDIT_NO_MATCH: "audit" or "debug" (default: debug)
    HOOKLINE_SECURITY_ALERT_THRESHOLD / HOOKLINE_SECURITY_ALERT_WINDOW_SECONDS
    HOOKLINE_OPERATOR_API_KEY: Enables operator routes when set
    HOOKLINE_ORCHESTRATOR_URL / HOOKLINE_SERVICES_URL: Destination base URLs
    HOOKLINE_SERVICE_TOKEN: Static service token for workflow/service destinations
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

ENV_PREFIX: Final[str] = "HOOKLINE_"

DEFAULT_SOURCES: Final[tuple[str, ...]] = ("ghl", "stripe", "retell", "twilio")
DEFAULT_IDEMPOTENCY_TTL_SECONDS: Final[int] = 86400
DEFAULT_FRESHNESS_TOLERANCE_SECONDS: Final[int] = 300
DEFAULT_IDEMPOTENCY_DB_PATH: Final[str] = "./var/idempotency/idempotency.sqlite3"
DEFAULT_REDIS_URL: Final[str] = "redis://localhost:6379/0"
DEFAULT_AUDIT_LOG_PATH: Final[str] = "./var/audit/ingress_events.jsonl"
DEFAULT_RETRY_BASE_SECONDS: Final[float] = 1.0
DEFAULT_RETRY_MULTIPLIER: Final[float] = 2.0
DEFAULT_RETRY_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_MAX_DELAY_SECONDS: Final[float] = 30.0
DEFAULT_RETRY_CONCURRENCY: Final[int] = 4
DEFAULT_RETRY_RATE_PER_SECOND: Final[int] = 10
DEFAULT_RATE_LIMIT_RPM: Final[int] = 600
DEFAULT_BURST_MULTIPLIER: Final[int] = 2
DEFAULT_SECURITY_ALERT_THRESHOLD: Final[int] = 3
DEFAULT_SECURITY_ALERT_WINDOW_SECONDS: Final[int] = 300


class ConfigError(Exception):
    """Raised when configuration is present but invalid."""


class IdempotencyBackend(str, Enum):
    """Supported idempotency store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    REDIS = "redis"
    SQL = "sql"


class NoMatchPolicy(str, Enum):
    """How unrouted events are recorded."""

    AUDIT = "audit"
    DEBUG = "debug"


@dataclass(frozen=True)
class RetrySettings:
    """Default retry policy values."""

    base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    multiplier: float = DEFAULT_RETRY_MULTIPLIER
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    concurrency: int = DEFAULT_RETRY_CONCURRENCY
    rate_per_second: int = DEFAULT_RETRY_RATE_PER_SECOND


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration."""

    sources: tuple[str, ...] = DEFAULT_SOURCES
    secrets: dict[str, str] = field(default_factory=dict)
    schemes: dict[str, str] = field(default_factory=dict)
    public_base_url: str | None = None
    idempotency_ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS
    freshness_tolerance_seconds: int = DEFAULT_FRESHNESS_TOLERANCE_SECONDS
    idempotency_backend: IdempotencyBackend = IdempotencyBackend.MEMORY
    idempotency_db_path: str = DEFAULT_IDEMPOTENCY_DB_PATH
    redis_url: str = DEFAULT_REDIS_URL
    database_url: str | None = None
    audit_log_path: str = DEFAULT_AUDIT_LOG_PATH
    rules_path: str | None = None
    retry: RetrySettings = field(default_factory=RetrySettings)
    rate_limit_rpm: int = DEFAULT_RATE_LIMIT_RPM
    rate_limit_burst_multiplier: int = DEFAULT_BURST_MULTIPLIER
    no_match_policy: NoMatchPolicy = NoMatchPolicy.DEBUG
    security_alert_threshold: int = DEFAULT_SECURITY_ALERT_THRESHOLD
    security_alert_window_seconds: int = DEFAULT_SECURITY_ALERT_WINDOW_SECONDS
    operator_api_key: str | None = None
    orchestrator_url: str | None = None
    services_url: str | None = None
    service_token: str | None = None

    def secret_for(self, source: str) -> str | None:
        """Return the configured secret for a source, if any."""
        return self.secrets.get(source)


def _env(name: str) -> str | None:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _parse_positive_int(name: str, default: int, allow_zero: bool = False) -> int:
    """Parse a positive integer setting.

    Raises:
        ConfigError: If the value is set but not a positive integer.
    """
    raw = _env(name)
    if raw is None:
        return default

    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got '{raw}'") from e

    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{ENV_PREFIX}{name} must be a positive integer, got {value}")
    return value


def _parse_positive_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default

    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got '{raw}'") from e

    if value <= 0:
        raise ConfigError(f"{ENV_PREFIX}{name} must be positive, got {value}")
    return value


def _parse_enum(name: str, enum_cls: type[Enum], default: Enum) -> Enum:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return enum_cls(raw.lower())
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{ENV_PREFIX}{name} must be one of: {allowed}; got '{raw}'") from e


def _parse_sources() -> tuple[str, ...]:
    raw = _env("SOURCES")
    if raw is None:
        return DEFAULT_SOURCES
    sources = tuple(s.strip().lower() for s in raw.split(",") if s.strip())
    if not sources:
        raise ConfigError(f"{ENV_PREFIX}SOURCES must name at least one source")
    return sources


def load_retry_settings() -> RetrySettings:
    """Load the default retry policy from the environment."""
    settings = RetrySettings(
        base_seconds=_parse_positive_float("RETRY_BASE_SECONDS", DEFAULT_RETRY_BASE_SECONDS),
        multiplier=_parse_positive_float("RETRY_MULTIPLIER", DEFAULT_RETRY_MULTIPLIER),
        max_attempts=_parse_positive_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
        max_delay_seconds=_parse_positive_float(
            "RETRY_MAX_DELAY_SECONDS", DEFAULT_RETRY_MAX_DELAY_SECONDS
        ),
        concurrency=_parse_positive_int("RETRY_CONCURRENCY", DEFAULT_RETRY_CONCURRENCY),
        rate_per_second=_parse_positive_int(
            "RETRY_RATE_PER_SECOND", DEFAULT_RETRY_RATE_PER_SECOND
        ),
    )
    if settings.multiplier < 1:
        raise ConfigError(f"{ENV_PREFIX}RETRY_MULTIPLIER must be >= 1")
    return settings


def load_settings() -> Settings:
    """Load settings from HOOKLINE_* environment variables.

    Returns:
        Validated Settings.

    Raises:
        ConfigError: If any value is invalid.
    """
    sources = _parse_sources()
    secrets: dict[str, str] = {}
    schemes: dict[str, str] = {}
    for source in sources:
        secret = _env(f"SECRET_{source.upper()}")
        if secret is not None:
            secrets[source] = secret
        scheme = _env(f"SCHEME_{source.upper()}")
        if scheme is not None:
            schemes[source] = scheme.lower()

    return Settings(
        sources=sources,
        secrets=secrets,
        schemes=schemes,
        public_base_url=_env("PUBLIC_BASE_URL"),
        idempotency_ttl_seconds=_parse_positive_int(
            "IDEMPOTENCY_TTL_SECONDS", DEFAULT_IDEMPOTENCY_TTL_SECONDS
        ),
        freshness_tolerance_seconds=_parse_positive_int(
            "FRESHNESS_TOLERANCE_SECONDS", DEFAULT_FRESHNESS_TOLERANCE_SECONDS, allow_zero=True
        ),
        idempotency_backend=_parse_enum(  # type: ignore[arg-type]
            "IDEMPOTENCY_BACKEND", IdempotencyBackend, IdempotencyBackend.MEMORY
        ),
        idempotency_db_path=_env("IDEMPOTENCY_DB_PATH") or DEFAULT_IDEMPOTENCY_DB_PATH,
        redis_url=_env("REDIS_URL") or DEFAULT_REDIS_URL,
        database_url=_env("DATABASE_URL"),
        audit_log_path=_env("AUDIT_LOG_PATH") or DEFAULT_AUDIT_LOG_PATH,
        rules_path=_env("RULES_PATH"),
        retry=load_retry_settings(),
        rate_limit_rpm=_parse_positive_int("RATE_LIMIT_RPM", DEFAULT_RATE_LIMIT_RPM),
        rate_limit_burst_multiplier=_parse_positive_int(
            "RATE_LIMIT_BURST_MULTIPLIER", DEFAULT_BURST_MULTIPLIER
        ),
        no_match_policy=_parse_enum(  # type: ignore[arg-type]
            "AUDIT_NO_MATCH", NoMatchPolicy, NoMatchPolicy.DEBUG
        ),
        security_alert_threshold=_parse_positive_int(
            "SECURITY_ALERT_THRESHOLD", DEFAULT_SECURITY_ALERT_THRESHOLD
        ),
        security_alert_window_seconds=_parse_positive_int(
            "SECURITY_ALERT_WINDOW_SECONDS", DEFAULT_SECURITY_ALERT_WINDOW_SECONDS
        ),
        operator_api_key=_env("OPERATOR_API_KEY"),
        orchestrator_url=_env("ORCHESTRATOR_URL"),
        services_url=_env("SERVICES_URL"),
        service_token=_env("SERVICE_TOKEN"),
    )
