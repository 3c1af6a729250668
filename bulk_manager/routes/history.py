"""
History and rollback API routes.
"""

import dataclasses
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from ..dependencies import get_service, require_auth
from ..db import (
    Category, EntryStatus, HistoryEntry, HistoryFilter, HistoryStatistics,
    OperationType, PriceHistoryPoint,
)
from ..shopify import RemoteCallError, ShopifyClientError

router = APIRouter(prefix="/api/history", dependencies=[Depends(require_auth)])


@router.get("", response_model=List[HistoryEntry])
async def list_history(
    category: Optional[Category] = Query(None),
    operation_type: Optional[OperationType] = Query(None),
    status: Optional[EntryStatus] = Query(None),
    product_id: Optional[str] = Query(None),
    batch_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=5000),
):
    """List history entries (newest first) matching all given filters."""
    service = get_service()
    return await service.query_history(HistoryFilter(
        category=category,
        operation_type=operation_type,
        status=status,
        product_id=product_id,
        batch_id=batch_id,
        search_term=search,
        start=start,
        end=end,
        limit=limit,
    ))


@router.get("/stats", response_model=HistoryStatistics)
async def history_stats():
    service = get_service()
    return await service.statistics()


@router.get("/export")
async def export_history():
    """Download the full history as JSON."""
    service = get_service()
    data = await service.export_history()
    filename = f"history-{datetime.now().strftime('%Y-%m-%d')}.json"
    return Response(
        content=data,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import")
async def import_history(request: Request):
    """Replace the history with an exported JSON array."""
    service = get_service()
    body = await request.body()
    if not await service.import_history(body.decode("utf-8", errors="replace")):
        raise HTTPException(status_code=400, detail="Invalid history data")
    return {"success": True}


@router.delete("")
async def clear_history():
    service = get_service()
    deleted = await service.clear_history()
    return {"deleted": deleted}


@router.get("/batches/{batch_id}", response_model=List[HistoryEntry])
async def batch_history(batch_id: str):
    """Aggregate entry and item entries of a batch."""
    service = get_service()
    entries = await service.batch_history(batch_id)
    if not entries:
        raise HTTPException(status_code=404, detail="Batch not found")
    return entries


@router.get("/batches/{batch_id}/trail", response_model=List[HistoryEntry])
async def batch_audit_trail(batch_id: str):
    """A batch with its rollbacks and retries, oldest first."""
    service = get_service()
    entries = await service.audit_trail(batch_id)
    if not entries:
        raise HTTPException(status_code=404, detail="Batch not found")
    return entries


@router.get("/variants/{variant_id:path}/prices", response_model=List[PriceHistoryPoint])
async def variant_price_history(variant_id: str):
    """Price changes recorded on a variant by discounts and their rollbacks, newest first."""
    service = get_service()
    try:
        return await service.price_history(variant_id)
    except RemoteCallError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ShopifyClientError as e:
        raise HTTPException(status_code=502, detail=f"Could not read price history: {e}")


@router.get("/{entry_id}", response_model=HistoryEntry)
async def get_entry(entry_id: str):
    service = get_service()
    entry = await service.get_entry(entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="History entry not found")
    return entry


@router.post("/{entry_id}/rollback")
async def rollback_entry(entry_id: str):
    """Roll back an entry or a whole batch (when given its aggregate entry)."""
    service = get_service()
    result = await service.rollback(entry_id)
    return dataclasses.asdict(result)
