# perishable/api/routers/webhooks.py
from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, status

from perishable.api.deps import get_engine
from perishable.engine import Engine
from perishable.schemas.settlement import parse_confirmations

logger = logging.getLogger("perishable.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment")
async def payment_webhook(
    body: Dict[str, Any] = Body(...),
    engine: Engine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    支付确认回调（至少一次投递）。

    单事件返回 {"outcome": ...}；PIX 批量回调额外返回 {"outcomes": [...]}。
    未知 charge → 404（NotFound 由全局处理器映射）。
    """
    try:
        events = parse_confirmations(body)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    outcomes: List[str] = []
    for event in events:
        outcome = await engine.settlement.handle(event)
        outcomes.append(outcome.value)

    out: Dict[str, Any] = {"outcome": outcomes[0]}
    if len(outcomes) > 1:
        out["outcomes"] = outcomes
    return out
