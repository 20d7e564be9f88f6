"""Startup wiring: Settings in, a fully connected IngressPipeline out.

Everything process-wide (rule registry, idempotency store, DLQ, audit sink,
counters) is created here once and handed to its users explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from hookline.audit.log import AuditLog
from hookline.audit.sink import AuditSink, JsonlFileAuditSink, SqlAuditSink
from hookline.config import ConfigError, IdempotencyBackend, Settings
from hookline.destinations.http import ServiceTokenProvider
from hookline.destinations.invoker import build_invoker
from hookline.idempotency.guard import ReplayGuard
from hookline.idempotency.store import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    SqliteIdempotencyStore,
    SqlIdempotencyStore,
)
from hookline.monitoring.counters import Counter, IngressCounters
from hookline.normalization.normalizer import Normalizer
from hookline.persistence.db import create_db_engine, ensure_schema
from hookline.pipeline.ingress import IngressPipeline
from hookline.retry.dlq import (
    DeadLetterService,
    DeadLetterStore,
    InMemoryDeadLetterStore,
    SqlDeadLetterStore,
)
from hookline.retry.policy import RetryPolicy
from hookline.retry.queue import RetryQueue
from hookline.routing.engine import RuleRegistry
from hookline.routing.loader import file_loader
from hookline.schemas.registry import SchemaRegistry
from hookline.sources.registry import build_source_registry
from hookline.validation.schema_validator import SchemaValidator
from hookline.verification.monitor import SecurityAlertNotifier, SecurityMonitor
from hookline.verification.verifier import SignatureVerifier

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

AUDIT_COUNTER_SOURCE = "audit"


@dataclass
class Components:
    """The process-wide objects behind a running pipeline."""

    pipeline: IngressPipeline
    http_client: httpx.AsyncClient
    engine: Engine | None = None


def build_idempotency_store(settings: Settings, engine: Engine | None) -> IdempotencyStore:
    """Idempotency store for the configured backend.

    Raises:
        ConfigError: If the sql backend is chosen without HOOKLINE_DATABASE_URL.
    """
    backend = settings.idempotency_backend
    if backend is IdempotencyBackend.SQLITE:
        return SqliteIdempotencyStore(settings.idempotency_db_path)
    if backend is IdempotencyBackend.REDIS:
        return RedisIdempotencyStore.from_url(settings.redis_url)
    if backend is IdempotencyBackend.SQL:
        if engine is None:
            raise ConfigError("HOOKLINE_IDEMPOTENCY_BACKEND=sql requires HOOKLINE_DATABASE_URL")
        return SqlIdempotencyStore(engine)
    return InMemoryIdempotencyStore()


def build_audit_sink(settings: Settings, engine: Engine | None) -> AuditSink:
    if engine is not None:
        return SqlAuditSink(engine)
    return JsonlFileAuditSink(settings.audit_log_path)


def build_dlq_store(engine: Engine | None) -> DeadLetterStore:
    if engine is not None:
        return SqlDeadLetterStore(engine)
    return InMemoryDeadLetterStore()


def build_rule_registry(settings: Settings) -> RuleRegistry:
    """Registry seeded from HOOKLINE_RULES_PATH; empty when unset."""
    if not settings.rules_path:
        logger.warning("HOOKLINE_RULES_PATH not set; every event will be unrouted")
        return RuleRegistry()
    loader = file_loader(settings.rules_path)
    return RuleRegistry(loader(), loader=loader)


def build_pipeline(
    settings: Settings,
    http_client: httpx.AsyncClient,
    *,
    engine: Engine | None = None,
    idempotency_store: IdempotencyStore | None = None,
    audit_sink: AuditSink | None = None,
    dlq_store: DeadLetterStore | None = None,
    rules: RuleRegistry | None = None,
    counters: IngressCounters | None = None,
    notifier: SecurityAlertNotifier | None = None,
    tokens: ServiceTokenProvider | None = None,
    schema_registry: SchemaRegistry | None = None,
) -> IngressPipeline:
    """Wire a pipeline from settings. Any collaborator can be injected."""
    sources = build_source_registry(settings)
    if counters is None:
        counters = IngressCounters()
    if audit_sink is None:
        audit_sink = build_audit_sink(settings, engine)
    if idempotency_store is None:
        idempotency_store = build_idempotency_store(settings, engine)
    if dlq_store is None:
        dlq_store = build_dlq_store(engine)
    if rules is None:
        rules = build_rule_registry(settings)
    audit = AuditLog(
        audit_sink,
        on_failure=lambda: counters.increment(AUDIT_COUNTER_SOURCE, Counter.AUDIT_WRITE_FAILED),
    )
    return IngressPipeline(
        sources=sources,
        verifier=SignatureVerifier(sources.strategies(), settings.secrets),
        guard=ReplayGuard(
            idempotency_store,
            ttl_seconds=settings.idempotency_ttl_seconds,
            freshness_tolerance_seconds=settings.freshness_tolerance_seconds,
        ),
        validator=SchemaValidator(schema_registry),
        normalizer=Normalizer(sources.mappers()),
        rules=rules,
        invoker=build_invoker(settings, http_client, tokens),
        queue=RetryQueue(),
        dlq=DeadLetterService(dlq_store, audit, counters),
        audit=audit,
        counters=counters,
        monitor=SecurityMonitor(
            notifier,
            threshold=settings.security_alert_threshold,
            window_seconds=settings.security_alert_window_seconds,
        ),
        default_policy=RetryPolicy.from_settings(settings.retry),
        no_match_policy=settings.no_match_policy,
    )


def build_components(settings: Settings) -> Components:
    """Create the engine (when configured), HTTP client and pipeline."""
    engine = None
    if settings.database_url:
        engine = create_db_engine(settings.database_url)
        ensure_schema(engine)
    http_client = httpx.AsyncClient()
    pipeline = build_pipeline(settings, http_client, engine=engine)
    return Components(pipeline=pipeline, http_client=http_client, engine=engine)
