# perishable/api/routers/items.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from perishable.api.deps import get_engine
from perishable.engine import Engine
from perishable.schemas.item import ExpiringItem
from perishable.schemas.reservation import AdjustRequest, AdjustResult

router = APIRouter(prefix="/items", tags=["items"])


@router.get("/expiring", response_model=List[ExpiringItem])
async def list_expiring(
    within_days: Optional[int] = Query(None, ge=0, le=60, description="默认 EXPIRY_ALERT_DAYS"),
    engine: Engine = Depends(get_engine),
) -> List[ExpiringItem]:
    return await engine.expiring_alerts(within_days)


@router.post("/{item_id}/adjust", response_model=AdjustResult)
async def adjust_stock(
    req: AdjustRequest,
    item_id: int = Path(..., ge=1),
    engine: Engine = Depends(get_engine),
) -> AdjustResult:
    """补货 / 报损（写 manual_adjustment 流水）"""
    qty = await engine.ledger.adjust(item_id=item_id, delta=req.delta, note=req.note)
    return AdjustResult(item_id=item_id, qty_available=qty)
