"""
Event Ingestion Routes for the Loan Lead Pipeline.

Receives abandonment signals and explicit registrations from the
application funnel, and lets operators trigger re-engagement manually.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from lead_pipeline.contact_extractor import is_email_hash
from lead_pipeline.errors import PipelineError, ValidationError
from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

TRY_AGAIN = "Something went wrong, please try again."


# ── Request Models ────────────────────────────────────────────────

class AbandonmentEvent(BaseModel):
    session_id: Optional[str] = None
    email: Optional[str] = Field(default=None, description="Raw address or its SHA-256 hash")
    step: Optional[int] = None
    observed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}


class RegistrationRequest(BaseModel):
    session_id: Optional[str] = None
    email: Optional[str] = None
    step: int = 1
    metadata: Dict[str, Any] = {}


# ── Endpoints ─────────────────────────────────────────────────────

@router.post("/events/abandonment", status_code=202)
async def abandonment_event(
    event: AbandonmentEvent,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    Record an abandonment signal.

    The payload is validated synchronously; detection itself runs in the
    background.
    """
    pipeline = services.pipeline
    try:
        email_hash = await pipeline.detector.validate_signal(event.session_id, event.email, event.step)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid abandonment event.")

    if not is_email_hash(event.email.strip()):
        await pipeline.directory.register(event.email)

    background_tasks.add_task(
        _detect,
        services,
        event.session_id,
        email_hash,
        event.step,
        _naive_utc(event.observed_at),
        event.metadata,
    )
    return {"status": "accepted"}


async def _detect(services: Services, session_id, email_hash, step, observed_at, metadata):
    try:
        await services.pipeline.detector.detect(session_id, email_hash, step, observed_at, metadata)
    except PipelineError as e:
        logger.error(f"Abandonment detection failed for session {session_id}: {e}")


@router.post("/visitors/register")
async def register_visitor(request: RegistrationRequest, services: Services = Depends(get_services)):
    pipeline = services.pipeline
    try:
        email_hash = await pipeline.detector.validate_signal(
            request.session_id, request.email, request.step, action="visitor_registered"
        )
        if not is_email_hash(request.email.strip()):
            await pipeline.directory.register(request.email)
        visitor = await pipeline.detector.register(
            request.session_id, email_hash, request.step, metadata=request.metadata
        )
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid registration.")

    return {"visitor_id": visitor.id, "abandonment_step": visitor.abandonment_step}


@router.post("/visitors/{visitor_id}/reengage")
async def reengage_visitor(visitor_id: str, services: Services = Depends(get_services)):
    """Send (or resend) the re-engagement message for a visitor."""
    try:
        result = await services.pipeline.dispatcher.dispatch(visitor_id)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Visitor not found.")

    if not result.success:
        raise HTTPException(status_code=502, detail=TRY_AGAIN)
    return {
        "status": "sent",
        "expires_at": result.expires_at.isoformat(),
        "reused_token": result.reused,
    }


@router.post("/events/replay")
async def replay_events(services: Services = Depends(get_services)):
    """Re-deliver events whose handlers failed."""
    bus = services.pipeline.bus
    pending = len(bus.undelivered)
    delivered = await bus.replay_undelivered()
    return {"pending": pending, "delivered": delivered, "remaining": len(bus.undelivered)}


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
