"""
Lead Management API Routes for the Loan Lead Pipeline.

Lead inspection, manual resubmission and dead-letter handling.
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from lead_pipeline.errors import InvalidTransition, LeadNotFound
from lead_pipeline.models import LeadStatus
from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/leads")
async def list_leads(
    status: Optional[str] = Query(None, description="pending, processing, submitted, failed, dead_lettered"),
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    """List leads, newest first."""
    try:
        status_filter = LeadStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown lead status: {status}")

    leads = await services.pipeline.leads.list(status=status_filter, limit=limit)
    return {"leads": [lead.to_dict() for lead in leads], "total": len(leads)}


@router.get("/leads/{lead_id}")
async def get_lead(lead_id: str, services: Services = Depends(get_services)):
    lead = await services.pipeline.leads.get(lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead.to_dict()


@router.post("/leads/{lead_id}/submit")
async def submit_lead(lead_id: str, services: Services = Depends(get_services)):
    """
    Submit (or resubmit) a lead to the dealer CRM.

    Concurrent requests for the same lead share one submission.
    """
    try:
        result = await services.pipeline.submitter.submit(lead_id)
    except LeadNotFound:
        raise HTTPException(status_code=404, detail="Lead not found")
    except InvalidTransition as e:
        logger.error(f"Lead {lead_id} cannot be resubmitted: {e}")
        raise HTTPException(status_code=409, detail="Lead cannot be resubmitted in its current state")
    return result.to_dict()


@router.get("/dead-letters")
async def list_dead_letters(
    include_resolved: bool = False,
    services: Services = Depends(get_services),
):
    entries = await services.pipeline.dead_letters.list(include_resolved=include_resolved)
    return {
        "dead_letters": [
            {
                "lead_id": e.lead_id,
                "error": e.error,
                "attempts": e.attempts,
                "dead_lettered_at": e.dead_lettered_at.isoformat(),
                "resolved_at": e.resolved_at.isoformat() if e.resolved_at else None,
            }
            for e in entries
        ],
        "total": len(entries),
    }


@router.post("/dead-letters/reprocess")
async def reprocess_dead_letters(services: Services = Depends(get_services)):
    """Resubmit every unresolved dead letter."""
    result = await services.pipeline.reprocessor.run_once()
    if result.skipped:
        raise HTTPException(status_code=409, detail="Reprocessing already in progress")
    return asdict(result)
