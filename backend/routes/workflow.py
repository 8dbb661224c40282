from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Body, HTTPException
from fastapi.responses import StreamingResponse

from backend.application import DECISIONS, get_intervention_resolver, get_pipeline_coordinator
from backend.core.errors import NotFoundError
from backend.domain import InvoiceImage, WorkflowRun
from backend.infrastructure import EventChannel, get_model_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])


@router.post("/stream")
async def stream_workflow(payload: dict[str, Any] | None = Body(None)) -> StreamingResponse:
    """Start a six-agent run for an invoice image and stream its events."""
    get_intervention_resolver().reap_expired()

    image = (payload or {}).get("image")
    if image is None or image == "":
        raise HTTPException(status_code=400, detail="Image is required")
    if get_model_gateway() is None:
        raise HTTPException(status_code=500, detail="GOOGLE_API_KEY not configured")
    if not isinstance(image, str):
        raise HTTPException(status_code=400, detail="Image must be a base64 string")

    try:
        invoice_image = InvoiceImage.from_upload(image)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid image: {exc}") from exc

    run = WorkflowRun(workflow_id=uuid4().hex, image=invoice_image)
    channel = EventChannel()
    get_pipeline_coordinator().start(run, channel)

    return StreamingResponse(
        channel.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Workflow-Id": run.workflow_id},
    )


@router.post("/intervention")
async def submit_intervention(payload: dict[str, Any] | None = Body(None)) -> dict[str, Any]:
    """Accept or decline a suspended run; further events go to its original stream."""
    resolver = get_intervention_resolver()
    resolver.reap_expired()

    payload = payload or {}
    intervention_id = payload.get("interventionId")
    decision = payload.get("decision")
    if not intervention_id or not decision:
        raise HTTPException(status_code=400, detail="interventionId and decision are required")
    if not isinstance(intervention_id, str):
        raise HTTPException(status_code=400, detail="interventionId must be a string")
    if decision not in DECISIONS:
        raise HTTPException(status_code=400, detail="decision must be 'accept' or 'decline'")

    try:
        return resolver.submit(intervention_id, decision)
    except NotFoundError as exc:
        logger.info("Decision %s for unknown intervention %s", decision, intervention_id)
        raise HTTPException(status_code=404, detail="Intervention not found or already resolved") from exc
