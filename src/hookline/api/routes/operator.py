"""Operator routes over the DLQ and the routing rule registry.

Provides:
- GET /operator/dlq (List DLQ entries, optional ?status=)
- GET /operator/dlq/{entry_id} (Get DLQ entry)
- POST /operator/dlq/{entry_id}/retry (One more attempt)
- POST /operator/dlq/{entry_id}/resolve (Handled out of band)
- POST /operator/dlq/{entry_id}/discard (Abandon with a reason)
- GET /operator/rules (List rules of the current snapshot)
- POST /operator/rules/{rule_id}/enable
- POST /operator/rules/{rule_id}/disable
- POST /operator/rules/reload

All routes require X-Hookline-Operator-Key. Every action writes an operator
audit record.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from hookline.api.errors import HooklineHttpError
from hookline.config import Settings
from hookline.pipeline.ingress import IngressPipeline
from hookline.retry.dlq import DLQEntry, DLQEntryNotFoundError, DLQStatus, InvalidDLQTransition
from hookline.routing.engine import RuleConfigError, RuleSnapshot, UnknownRuleError
from hookline.verification.signing import constant_time_equals

logger = logging.getLogger(__name__)

OPERATOR_KEY_HEADER = "X-Hookline-Operator-Key"
OPERATOR_ACTOR_HEADER = "X-Hookline-Actor"


def require_operator(request: Request) -> str:
    """Check the operator key and return the acting operator's name.

    Raises:
        HooklineHttpError: 403 when no operator key is configured, 401 when
            the header is missing or wrong.
    """
    settings: Settings = request.app.state.settings
    expected = settings.operator_api_key
    if not expected:
        raise HooklineHttpError(
            status_code=403,
            code="OPERATOR_API_DISABLED",
            message="Operator interface is not configured",
        )

    provided = request.headers.get(OPERATOR_KEY_HEADER, "")
    if not provided or not constant_time_equals(expected, provided):
        raise HooklineHttpError(
            status_code=401,
            code="UNAUTHORIZED",
            message="Invalid operator key",
        )
    return request.headers.get(OPERATOR_ACTOR_HEADER) or "operator"


RequireOperator = Annotated[str, Depends(require_operator)]

router = APIRouter(prefix="/operator", tags=["Operator"])


class ResolveRequest(BaseModel):
    note: str | None = None


class DiscardRequest(BaseModel):
    reason: str = Field(..., min_length=1)


def _pipeline(request: Request) -> IngressPipeline:
    pipeline: IngressPipeline = request.app.state.pipeline
    return pipeline


def _entry_body(entry: DLQEntry) -> dict[str, Any]:
    return entry.to_dict(include_event=False)


def _not_found(entry_id: str) -> HooklineHttpError:
    return HooklineHttpError(
        status_code=404,
        code="DLQ_ENTRY_NOT_FOUND",
        message=f"DLQ entry not found: {entry_id}",
    )


def _invalid_transition(exc: InvalidDLQTransition) -> HooklineHttpError:
    return HooklineHttpError(
        status_code=409,
        code="INVALID_DLQ_TRANSITION",
        message=str(exc),
        details={"current": exc.current.value, "requested": exc.requested.value},
    )


@router.get("/dlq")
def list_dlq(
    request: Request,
    actor: RequireOperator,
    status: Annotated[DLQStatus | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> dict[str, Any]:
    """List DLQ entries in creation order, optionally filtered by status."""
    entries = _pipeline(request).dlq.list(status=status, limit=limit)
    return {"items": [_entry_body(e) for e in entries], "count": len(entries)}


@router.get("/dlq/{entry_id}")
def get_dlq_entry(entry_id: str, request: Request, actor: RequireOperator) -> dict[str, Any]:
    """Full entry including the canonical event."""
    try:
        entry = _pipeline(request).dlq.get(entry_id)
    except DLQEntryNotFoundError:
        raise _not_found(entry_id) from None
    return entry.to_dict(include_event=True)


@router.post("/dlq/{entry_id}/retry")
def retry_dlq_entry(entry_id: str, request: Request, actor: RequireOperator) -> dict[str, Any]:
    """Re-enqueue a pending entry for exactly one more attempt."""
    try:
        entry = _pipeline(request).dlq.retry(entry_id, actor=actor)
    except DLQEntryNotFoundError:
        raise _not_found(entry_id) from None
    except InvalidDLQTransition as exc:
        raise _invalid_transition(exc) from None
    return _entry_body(entry)


@router.post("/dlq/{entry_id}/resolve")
def resolve_dlq_entry(
    entry_id: str,
    request: Request,
    actor: RequireOperator,
    body: ResolveRequest | None = None,
) -> dict[str, Any]:
    """Mark an entry as handled out of band."""
    note = body.note if body is not None else None
    try:
        entry = _pipeline(request).dlq.resolve(entry_id, note=note, actor=actor)
    except DLQEntryNotFoundError:
        raise _not_found(entry_id) from None
    except InvalidDLQTransition as exc:
        raise _invalid_transition(exc) from None
    return _entry_body(entry)


@router.post("/dlq/{entry_id}/discard")
def discard_dlq_entry(
    entry_id: str,
    body: DiscardRequest,
    request: Request,
    actor: RequireOperator,
) -> dict[str, Any]:
    """Abandon an entry permanently. A non-blank reason is required."""
    try:
        entry = _pipeline(request).dlq.discard(entry_id, reason=body.reason, actor=actor)
    except DLQEntryNotFoundError:
        raise _not_found(entry_id) from None
    except InvalidDLQTransition as exc:
        raise _invalid_transition(exc) from None
    except ValueError as exc:
        raise HooklineHttpError(
            status_code=400,
            code="DISCARD_REASON_REQUIRED",
            message=str(exc),
        ) from None
    return _entry_body(entry)


def _snapshot_body(snapshot: RuleSnapshot) -> dict[str, Any]:
    return {
        "generation": snapshot.generation,
        "rules": [rule.summary() for rule in snapshot.rules],
    }


def _record_rule_action(
    pipeline: IngressPipeline,
    action: str,
    target: str,
    actor: str,
    snapshot: RuleSnapshot,
) -> None:
    pipeline.audit.record_operator(
        action=action,
        target=target,
        actor=actor,
        details={"generation": snapshot.generation, "rules": len(snapshot.rules)},
    )


@router.get("/rules")
def list_rules(request: Request, actor: RequireOperator) -> dict[str, Any]:
    """Rules of the current snapshot in evaluation order."""
    return _snapshot_body(_pipeline(request).rules.current())


def _set_rule_enabled(request: Request, rule_id: str, actor: str, enabled: bool) -> dict[str, Any]:
    pipeline = _pipeline(request)
    registry = pipeline.rules
    try:
        snapshot = registry.enable(rule_id) if enabled else registry.disable(rule_id)
    except UnknownRuleError:
        raise HooklineHttpError(
            status_code=404,
            code="RULE_NOT_FOUND",
            message=f"Routing rule not found: {rule_id}",
        ) from None
    _record_rule_action(
        pipeline, "rules.enable" if enabled else "rules.disable", rule_id, actor, snapshot
    )
    return _snapshot_body(snapshot)


@router.post("/rules/{rule_id}/enable")
def enable_rule(rule_id: str, request: Request, actor: RequireOperator) -> dict[str, Any]:
    return _set_rule_enabled(request, rule_id, actor, True)


@router.post("/rules/{rule_id}/disable")
def disable_rule(rule_id: str, request: Request, actor: RequireOperator) -> dict[str, Any]:
    return _set_rule_enabled(request, rule_id, actor, False)


@router.post("/rules/reload")
def reload_rules(request: Request, actor: RequireOperator) -> dict[str, Any]:
    """Re-read the rule file and publish it as a new snapshot.

    A failed reload leaves the current snapshot in place.
    """
    pipeline = _pipeline(request)
    try:
        snapshot = pipeline.rules.reload()
    except RuleConfigError as exc:
        logger.warning("Rule reload failed: %s", exc)
        raise HooklineHttpError(
            status_code=400,
            code="RULE_RELOAD_FAILED",
            message=str(exc),
        ) from None
    _record_rule_action(pipeline, "rules.reload", "rules", actor, snapshot)
    return _snapshot_body(snapshot)
