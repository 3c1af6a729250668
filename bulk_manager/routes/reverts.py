"""
Scheduled discount revert routes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..dependencies import get_service, require_auth
from ..db import ScheduledRevert

router = APIRouter(prefix="/api/reverts", dependencies=[Depends(require_auth)])


class RevertOutcome(BaseModel):
    revert_id: str
    batch_id: str
    success: bool
    message: str
    errors: List[str]


@router.get("", response_model=List[ScheduledRevert])
async def list_reverts(batch_id: Optional[str] = Query(None)):
    service = get_service()
    return await service.get_scheduled_reverts(batch_id)


@router.post("/process", response_model=List[RevertOutcome])
async def process_reverts():
    """Roll back every discount whose expiry has passed."""
    service = get_service()
    outcomes = await service.process_scheduled_reverts()
    return [
        RevertOutcome(
            revert_id=revert.id,
            batch_id=revert.batch_id,
            success=result.success,
            message=result.message,
            errors=result.errors,
        )
        for revert, result in outcomes
    ]
