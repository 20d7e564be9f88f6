"""Inbound webhook route.

Provides POST /webhooks/{source}. The caller only ever sees the receipt-time
outcome; downstream failures surface in the DLQ and the audit log.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from hookline.api.errors import HooklineHttpError
from hookline.models.events import RawDelivery
from hookline.pipeline.ingress import IngressPipeline, ReceiptOutcome, ReceiptStatus

router = APIRouter(tags=["Webhooks"])


def _outcome_response(outcome: ReceiptOutcome) -> JSONResponse:
    status = outcome.status
    if status is ReceiptStatus.ACCEPTED:
        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "event_id": outcome.event_id},
        )
    if status is ReceiptStatus.DUPLICATE:
        return JSONResponse(status_code=200, content={"message": "already processed"})
    if status in (ReceiptStatus.SIGNATURE_REJECTED, ReceiptStatus.REPLAY_REJECTED):
        raise HooklineHttpError(
            status_code=401,
            code="SIGNATURE_INVALID",
            message="Signature verification failed",
        )
    if status is ReceiptStatus.SCHEMA_REJECTED:
        raise HooklineHttpError(
            status_code=400,
            code="SCHEMA_VALIDATION_FAILED",
            message="Payload failed schema validation",
            details={"event_id": outcome.event_id, "violations": outcome.violations},
        )
    if status is ReceiptStatus.INVALID_JSON:
        raise HooklineHttpError(
            status_code=400,
            code="INVALID_JSON",
            message="Request body must be a JSON object",
            details={"event_id": outcome.event_id},
        )
    raise RuntimeError(f"Unhandled receipt status: {status}")


@router.post("/webhooks/{source}", status_code=202)
async def receive_webhook(source: str, request: Request) -> Any:
    """Receive one delivery from a registered source.

    Args:
        source: Source tag from the path.
        request: Raw request; the body is read as bytes before any parsing.

    Returns:
        202 on acceptance, 200 for a duplicate.

    Raises:
        HooklineHttpError: 404 for an unknown source, 401/400 for rejections.
    """
    pipeline: IngressPipeline = request.app.state.pipeline
    if source not in pipeline.sources:
        raise HooklineHttpError(
            status_code=404,
            code="UNKNOWN_SOURCE",
            message=f"Unknown webhook source: {source}",
        )

    body = await request.body()
    raw = RawDelivery.create(
        source,
        dict(request.headers),
        body,
        method=request.method,
        path=request.url.path,
        url=str(request.url),
    )
    request_id: str | None = getattr(request.state, "request_id", None)
    outcome = await pipeline.receive(raw, request_id=request_id)
    return _outcome_response(outcome)
