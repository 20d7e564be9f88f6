"""Internal counters endpoint.

Read by an external alerting collaborator; nothing here decides what is alertable.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from hookline.pipeline.ingress import IngressPipeline

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.get("/counters")
def get_counters(request: Request) -> dict[str, Any]:
    pipeline: IngressPipeline = request.app.state.pipeline
    snapshot = pipeline.counters.snapshot()
    snapshot["retry_queue_depth"] = len(pipeline.queue)
    return snapshot
