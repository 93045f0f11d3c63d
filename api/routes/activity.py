"""
Activity Log Routes for the Loan Lead Pipeline.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/activity")
async def list_activity(
    target_id: Optional[str] = None,
    stage: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    """Audit trail, oldest first, filtered by target entity and/or stage."""
    records = await services.pipeline.activity.query(target_id=target_id, stage=stage, limit=limit)
    return {"records": [r.to_dict() for r in records], "total": len(records)}
