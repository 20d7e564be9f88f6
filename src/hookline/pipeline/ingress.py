"""Webhook ingress pipeline.

Control flow per delivery:

    receive -> verify -> replay guard -> validate -> normalize -> route -> invoke

The caller of ``receive`` only learns the receipt-time outcome (accepted,
duplicate, rejected). Everything after the guard is reported through the
audit log, the retry queue and the DLQ.

Failures after verification go through ``on_failure`` of the retry state
machine, which is the only place deciding retry versus dead-letter. Retried
events resume at:
- the replay guard, when the idempotency store was unavailable
- the validator, when the payload itself was rejected (operator retry only)
- the normalizer, for everything else

Each attempt reads the current rule snapshot once, so a reload between
attempts takes effect on the next attempt and never mid-attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from hookline.audit.log import AuditLog
from hookline.config import NoMatchPolicy
from hookline.destinations.invoker import DestinationInvoker
from hookline.errors import (
    DestinationError,
    ErrorClass,
    InvalidPayloadError,
    MappingError,
    PipelineError,
    ReplayRejectedError,
    RetryInterruptedError,
    SchemaValidationError,
    SignatureError,
    Stage,
    StoreUnavailableError,
)
from hookline.idempotency.guard import GuardOutcome, ReplayGuard
from hookline.models.events import CanonicalEvent, RawDelivery, VerifiedDelivery, utc_now
from hookline.monitoring.counters import Counter, IngressCounters
from hookline.normalization.normalizer import Normalizer
from hookline.retry.dlq import (
    DeadLetterService,
    DeadLetterStoreError,
    DLQEntry,
    DLQEntryNotFoundError,
    InvalidDLQTransition,
)
from hookline.retry.policy import RetryPolicy, with_one_more_attempt
from hookline.retry.queue import RetryItem, RetryQueue
from hookline.retry.state import RetryState, RetryStatus, on_failure, on_success
from hookline.routing.engine import NoMatch, RuleEngine, RuleRegistry
from hookline.routing.rules import RoutingRule
from hookline.sources.registry import SourceRegistry
from hookline.validation.schema_validator import SchemaValidator
from hookline.verification.monitor import SecurityMonitor
from hookline.verification.verifier import SignatureVerifier

logger = logging.getLogger(__name__)


class ReceiptStatus(str, Enum):
    """What the inbound caller is told."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    SIGNATURE_REJECTED = "signature_rejected"
    REPLAY_REJECTED = "replay_rejected"
    SCHEMA_REJECTED = "schema_rejected"
    INVALID_JSON = "invalid_json"


@dataclass(frozen=True)
class ReceiptOutcome:
    """Receipt-time result of one delivery.

    Attributes:
        status: Outcome shown to the caller.
        source: Source the delivery arrived on.
        event_id: Resolved event id, once known.
        violations: Schema violations, for SCHEMA_REJECTED.
    """

    status: ReceiptStatus
    source: str
    event_id: str | None = None
    violations: list[dict[str, str]] = field(default_factory=list)


@dataclass
class _Attempt:
    """Mutable context of one processing attempt, owned by one task."""

    event: CanonicalEvent
    state: RetryState
    policy: RetryPolicy
    stages: list[str] = field(default_factory=list)
    rule_id: str | None = None
    dlq_entry_id: str | None = None
    request_id: str | None = None


def parse_json_object(body: bytes) -> dict[str, Any] | None:
    """Parse a body as a JSON object; None if it is anything else."""
    try:
        value = json.loads(body)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def resume_stage_for(stage: Stage | None) -> Stage:
    if stage in (Stage.REPLAY_GUARD, Stage.VALIDATE):
        return stage
    return Stage.NORMALIZE


class IngressPipeline:
    """Runs deliveries through every stage and settles each outcome.

    All collaborators are injected; nothing here reaches for module-level
    state. The retry worker drives ``process_retry``; operator DLQ retries
    come back through ``requeue_dead_letter``.
    """

    def __init__(
        self,
        *,
        sources: SourceRegistry,
        verifier: SignatureVerifier,
        guard: ReplayGuard,
        validator: SchemaValidator,
        normalizer: Normalizer,
        rules: RuleRegistry,
        invoker: DestinationInvoker,
        queue: RetryQueue,
        dlq: DeadLetterService,
        audit: AuditLog,
        counters: IngressCounters,
        monitor: SecurityMonitor,
        default_policy: RetryPolicy | None = None,
        no_match_policy: NoMatchPolicy = NoMatchPolicy.DEBUG,
        clock: Callable[[], datetime] = utc_now,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._sources = sources
        self._verifier = verifier
        self._guard = guard
        self._validator = validator
        self._normalizer = normalizer
        self._rules = rules
        self._invoker = invoker
        self._queue = queue
        self._dlq = dlq
        self._audit = audit
        self._counters = counters
        self._monitor = monitor
        self._default_policy = default_policy or RetryPolicy()
        self._no_match_policy = no_match_policy
        self._clock = clock
        self._rand = rand
        self._tasks: set[asyncio.Task[Any]] = set()
        self._park_tasks: set[asyncio.Task[None]] = set()
        dlq.bind_requeue(self.requeue_dead_letter)

    @property
    def sources(self) -> SourceRegistry:
        return self._sources

    @property
    def rules(self) -> RuleRegistry:
        return self._rules

    @property
    def queue(self) -> RetryQueue:
        return self._queue

    @property
    def dlq(self) -> DeadLetterService:
        return self._dlq

    @property
    def counters(self) -> IngressCounters:
        return self._counters

    @property
    def audit(self) -> AuditLog:
        return self._audit

    async def receive(
        self, raw: RawDelivery, request_id: str | None = None
    ) -> ReceiptOutcome:
        """Handle one inbound delivery up to its receipt-time outcome.

        Synchronous rules are invoked before returning; asynchronous rules are
        dispatched to a background task. Destination failures never change
        the returned outcome.
        """
        source = raw.source
        self._counters.increment(source, Counter.RECEIVED)

        try:
            self._verifier.verify(raw)
        except SignatureError as e:
            self._counters.increment(source, Counter.REJECTED_SIGNATURE)
            self._reject_security(raw, e, "signature.rejected", request_id)
            return ReceiptOutcome(ReceiptStatus.SIGNATURE_REJECTED, source)

        adapter = self._sources[source]
        payload = parse_json_object(raw.body)
        delivery = VerifiedDelivery(
            raw=raw,
            payload=payload or {},
            event_id=adapter.resolve_event_id(payload or {}, raw),
            occurred_at=adapter.occurred_at(payload) if payload is not None else None,
        )
        attempt = _Attempt(
            event=Normalizer.provisional(delivery),
            state=RetryState(),
            policy=self._default_policy,
            stages=[Stage.RECEIVE.value, Stage.VERIFY.value],
            request_id=request_id,
        )

        try:
            guarded = self._guard.check(source, delivery.event_id, delivery.occurred_at)
        except ReplayRejectedError as e:
            self._counters.increment(source, Counter.REJECTED_REPLAY)
            self._reject_security(raw, e, "replay.rejected", request_id, delivery.event_id)
            return ReceiptOutcome(ReceiptStatus.REPLAY_REJECTED, source, delivery.event_id)
        except StoreUnavailableError as e:
            self._fail(attempt, e)
            return self._accepted(source, delivery.event_id)

        attempt.stages.append(Stage.REPLAY_GUARD.value)
        if guarded is GuardOutcome.DUPLICATE:
            self._counters.increment(source, Counter.DUPLICATE)
            self._audit.record_event(
                attempt.event, "duplicate", attempt.stages, request_id=request_id
            )
            return ReceiptOutcome(ReceiptStatus.DUPLICATE, source, delivery.event_id)

        if payload is None:
            error = InvalidPayloadError("body is not a JSON object")
            self._fail(attempt, error)
            return ReceiptOutcome(ReceiptStatus.INVALID_JSON, source, delivery.event_id)

        error = await self._advance(delivery, attempt, Stage.VALIDATE, inline=False)
        if isinstance(error, SchemaValidationError):
            return ReceiptOutcome(
                ReceiptStatus.SCHEMA_REJECTED,
                source,
                delivery.event_id,
                violations=error.violations,
            )
        return self._accepted(source, delivery.event_id)

    async def process_retry(self, item: RetryItem) -> None:
        """Run one re-attempt taken off the retry queue."""
        attempt = _Attempt(
            event=item.event,
            state=item.state,
            policy=item.policy,
            stages=[item.resume_stage.value],
            dlq_entry_id=item.dlq_entry_id,
        )
        logger.info(
            "Retrying %s from %s (attempt %d)",
            item.event.idempotency_key,
            item.resume_stage.value,
            item.state.attempts + 1,
        )

        payload = parse_json_object(item.event.original.body)
        if payload is None:
            self._fail(attempt, InvalidPayloadError("body is not a JSON object"))
            return
        delivery = self.reconstruct(item.event, payload)

        if item.resume_stage is Stage.REPLAY_GUARD:
            try:
                guarded = self._guard.claim(delivery.source, delivery.event_id)
            except StoreUnavailableError as e:
                self._fail(attempt, e)
                return
            if guarded is GuardOutcome.DUPLICATE:
                self._counters.increment(delivery.source, Counter.DUPLICATE)
                self._audit.record_event(attempt.event, "duplicate", attempt.stages)
                self._close_dlq_entry(attempt, None)
                return

        start = Stage.NORMALIZE if item.resume_stage is Stage.NORMALIZE else Stage.VALIDATE
        await self._advance(delivery, attempt, start, inline=True)

    @staticmethod
    def reconstruct(
        event: CanonicalEvent, payload: dict[str, Any] | None = None
    ) -> VerifiedDelivery:
        """Rebuild the verified delivery from an event's retained original.

        Raises:
            InvalidPayloadError: If the original body is not a JSON object.
        """
        if payload is None:
            payload = parse_json_object(event.original.body)
            if payload is None:
                raise InvalidPayloadError("body is not a JSON object")
        raw = RawDelivery.create(
            event.source,
            dict(event.original.headers),
            event.original.body,
            received_at=event.received_at,
        )
        return VerifiedDelivery(raw=raw, payload=payload, event_id=event.event_id)

    def requeue_dead_letter(self, entry: DLQEntry) -> None:
        """Enqueue a DLQ entry for exactly one more attempt."""
        rule = self._rules.current().get(entry.rule_id) if entry.rule_id else None
        base = rule.retry if rule is not None and rule.retry is not None else self._default_policy
        item = RetryItem(
            event=entry.event.model_copy(deep=True),
            resume_stage=resume_stage_for(entry.stage),
            state=RetryState(
                status=RetryStatus.RETRYING,
                attempts=entry.retry_count,
                stage=entry.stage,
                last_error=entry.error_message,
                error_class=entry.error_class,
            ),
            policy=with_one_more_attempt(base, entry.retry_count),
            dlq_entry_id=entry.id,
        )
        self._queue.push(item, 0.0)
        logger.info("Re-enqueued DLQ entry %s for one more attempt", entry.id)

    async def drain(self) -> None:
        """Wait for every background dispatch started so far.

        Pending DLQ writes are not waited for; they keep retrying until
        ``aclose`` cancels them.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def park_pending(self) -> int:
        """Dead-letter every retry still queued. Used at shutdown.

        Queued retries live only in memory, so each one is parked as a
        pending DLQ entry (operator retries go back to pending on their
        existing entry). Returns the number of items taken off the queue.
        """
        items = self._queue.pop_all()
        for item in items:
            error = RetryInterruptedError(
                item.state.stage or item.resume_stage, item.state.last_error
            )
            attempt = _Attempt(
                event=item.event,
                state=item.state,
                policy=item.policy,
                stages=[item.resume_stage.value],
                rule_id=item.rule_id,
                dlq_entry_id=item.dlq_entry_id,
            )
            try:
                self._write_dead_letter(attempt, error)
            except DeadLetterStoreError as e:
                logger.error(
                    "Dropping queued retry of %s at shutdown, DLQ write failed: %s",
                    item.event.idempotency_key,
                    e,
                )
                continue
            self._audit.record_event(
                item.event,
                "dead_lettered",
                attempt.stages,
                rule_id=item.rule_id,
                error=error.describe(),
                error_class=error.error_class.value,
                extra={"attempt": item.state.attempts},
            )
        if items:
            logger.warning("Dead-lettered %d queued retries at shutdown", len(items))
        return len(items)

    async def aclose(self) -> None:
        """Cancel background tasks and pending DLQ writes that are still running."""
        pending = list(self._tasks) + list(self._park_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _advance(
        self,
        delivery: VerifiedDelivery,
        attempt: _Attempt,
        start: Stage,
        *,
        inline: bool,
    ) -> PipelineError | None:
        """Validate (optionally), normalize, route and invoke.

        Returns the error that ended this attempt synchronously, if any.
        """
        adapter = self._sources[delivery.source]

        if start is Stage.VALIDATE:
            try:
                self._validator.check(adapter.schema_name, delivery.payload)
            except SchemaValidationError as e:
                self._fail(attempt, e)
                return e
            attempt.stages.append(Stage.VALIDATE.value)

        try:
            event = self._normalizer.normalize(delivery)
        except MappingError as e:
            self._fail(attempt, e)
            return e
        event.metadata.retry_count = attempt.state.attempts
        event.metadata.error = attempt.event.metadata.error
        attempt.event = event
        attempt.stages.append(Stage.NORMALIZE.value)

        matched = RuleEngine.match(event, self._rules.current())
        if isinstance(matched, NoMatch):
            self._no_match(attempt, matched.generation)
            return None

        rule = matched.rule
        attempt.rule_id = rule.rule_id
        if attempt.dlq_entry_id is None and rule.retry is not None:
            attempt.policy = rule.retry
        attempt.stages.append(Stage.ROUTE.value)

        if rule.async_ and not inline:
            self._spawn(self._invoke(attempt, rule))
            return None
        return await self._invoke(attempt, rule)

    async def _invoke(self, attempt: _Attempt, rule: RoutingRule) -> PipelineError | None:
        try:
            await self._invoker.invoke(rule, attempt.event)
        except PipelineError as e:
            self._fail(attempt, e)
            return e
        except Exception as e:
            logger.exception(
                "Unexpected error invoking %s for %s",
                rule.destination.kind,
                attempt.event.idempotency_key,
            )
            error = DestinationError(f"unexpected error: {type(e).__name__}", ErrorClass.TRANSIENT)
            self._fail(attempt, error)
            return error

        attempt.stages.append(Stage.INVOKE.value)
        self._succeed(attempt)
        return None

    def _succeed(self, attempt: _Attempt) -> None:
        event = attempt.event
        attempt.state = on_success(attempt.state)
        event.processed_at = self._clock()
        self._counters.increment(event.source, Counter.PROCESSED)
        self._audit.record_event(
            event,
            "processed",
            attempt.stages,
            rule_id=attempt.rule_id,
            request_id=attempt.request_id,
        )
        self._close_dlq_entry(attempt, None)

    def _no_match(self, attempt: _Attempt, generation: int) -> None:
        event = attempt.event
        attempt.state = on_success(attempt.state)
        self._counters.increment(event.source, Counter.NO_MATCH)
        if self._no_match_policy is NoMatchPolicy.AUDIT:
            self._audit.record_event(
                event,
                "no_match",
                attempt.stages,
                request_id=attempt.request_id,
                extra={"rule_generation": generation},
            )
        else:
            logger.debug(
                "No routing rule matched %s (%s, generation=%d)",
                event.idempotency_key,
                event.event_type,
                generation,
            )
        self._close_dlq_entry(attempt, None)

    def _fail(self, attempt: _Attempt, error: PipelineError) -> None:
        """Record a failed attempt and hand it to the retry queue or the DLQ."""
        event = attempt.event
        state = on_failure(attempt.state, error, attempt.policy, self._rand)
        attempt.state = state
        event.metadata.retry_count = state.attempts
        event.metadata.error = error.describe()

        if isinstance(error, SchemaValidationError):
            counter = Counter.REJECTED_SCHEMA
        elif error.error_class is ErrorClass.TRANSIENT:
            counter = Counter.FAILED_TRANSIENT
        else:
            counter = Counter.FAILED_PERMANENT
        self._counters.increment(event.source, counter)

        logger.warning(
            "Attempt %d for %s failed at %s (%s): %s",
            state.attempts,
            event.idempotency_key,
            error.stage.value,
            error.error_class.value,
            error.message,
            extra={"request_id": attempt.request_id, "source": event.source},
        )

        if state.status is RetryStatus.RETRYING:
            delay = state.next_delay_seconds or 0.0
            self._queue.push(
                RetryItem(
                    event=event,
                    resume_stage=resume_stage_for(error.stage),
                    state=state,
                    policy=attempt.policy,
                    dlq_entry_id=attempt.dlq_entry_id,
                    rule_id=attempt.rule_id,
                ),
                delay,
            )
            self._counters.increment(event.source, Counter.RETRY_SCHEDULED)
            outcome = "retry_scheduled"
            extra: dict[str, Any] = {"next_delay_seconds": round(delay, 3)}
        else:
            self._park(attempt, error)
            outcome = "dead_lettered"
            extra = {}

        self._audit.record_event(
            event,
            outcome,
            attempt.stages,
            rule_id=attempt.rule_id,
            error=error.describe(),
            error_class=error.error_class.value,
            request_id=attempt.request_id,
            extra={"attempt": state.attempts, **extra},
        )

    def _park(self, attempt: _Attempt, error: PipelineError) -> None:
        try:
            self._write_dead_letter(attempt, error)
        except DeadLetterStoreError:
            logger.exception(
                "DLQ write failed for %s; will keep retrying the write",
                attempt.event.idempotency_key,
            )
            task = asyncio.create_task(self._park_later(attempt, error))
            self._park_tasks.add(task)
            task.add_done_callback(self._park_tasks.discard)

    def _write_dead_letter(self, attempt: _Attempt, error: PipelineError) -> None:
        if attempt.dlq_entry_id is None:
            self._dlq.dead_letter(
                attempt.event, error, attempt.state.attempts, rule_id=attempt.rule_id
            )
        else:
            self._close_dlq_entry(attempt, error)

    async def _park_later(self, attempt: _Attempt, error: PipelineError) -> None:
        delay = attempt.policy.max_delay_seconds
        try:
            while True:
                await asyncio.sleep(delay)
                try:
                    self._write_dead_letter(attempt, error)
                except DeadLetterStoreError as e:
                    logger.error(
                        "DLQ write for %s still failing: %s", attempt.event.idempotency_key, e
                    )
                    continue
                return
        except asyncio.CancelledError:
            logger.error(
                "Stopped before %s could be dead-lettered: %s",
                attempt.event.idempotency_key,
                error.describe(),
            )
            raise

    def _close_dlq_entry(self, attempt: _Attempt, error: PipelineError | None) -> None:
        if attempt.dlq_entry_id is None:
            return
        try:
            self._dlq.record_retry_outcome(
                attempt.dlq_entry_id, attempt.event, error, attempt.state.attempts
            )
        except (DLQEntryNotFoundError, InvalidDLQTransition) as e:
            logger.warning(
                "Could not record retry outcome on DLQ entry %s: %s", attempt.dlq_entry_id, e
            )

    def _reject_security(
        self,
        raw: RawDelivery,
        error: SignatureError | ReplayRejectedError,
        action: str,
        request_id: str | None,
        event_id: str | None = None,
    ) -> None:
        logger.warning(
            "Rejected %s delivery at %s: %s",
            raw.source,
            error.stage.value,
            error.reason,
            extra={"request_id": request_id, "source": raw.source},
        )
        self._audit.record_security(
            source=raw.source,
            action=action,
            reason=error.reason,
            received_at=raw.received_at,
            headers=dict(raw.headers),
            event_id=event_id,
            request_id=request_id,
            details=error.details,
        )
        alert = self._monitor.record_failure(raw.source, error.reason)
        if alert is not None:
            self._audit.record_security(
                source=raw.source,
                action="security.alert_raised",
                reason=f"{alert.failure_count} failures within {alert.window_seconds}s",
                received_at=raw.received_at,
                request_id=request_id,
                details={
                    "failure_count": alert.failure_count,
                    "window_seconds": alert.window_seconds,
                    "reasons": sorted(set(alert.reasons)),
                },
            )

    def _accepted(self, source: str, event_id: str) -> ReceiptOutcome:
        self._counters.increment(source, Counter.ACCEPTED)
        return ReceiptOutcome(ReceiptStatus.ACCEPTED, source, event_id)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
