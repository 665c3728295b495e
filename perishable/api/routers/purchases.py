# perishable/api/routers/purchases.py
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from perishable.api.deps import get_engine
from perishable.domain.errors import InsufficientStock, ValidityInsufficient
from perishable.engine import Engine
from perishable.schemas.purchase import BuyRequest, PaymentInstruction, PurchaseRejection

router = APIRouter(prefix="/purchases", tags=["purchases"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=PaymentInstruction,
    responses={409: {"model": PurchaseRejection}},
)
async def buy(
    req: BuyRequest,
    engine: Engine = Depends(get_engine),
):
    """
    下单：评估 → 预留 → 开 PIX 收款单。

    - 409：送达前过期 / 库存不足（含替代品或下一个可送达日期）
    - 502：ETA / 支付供应商失败（开单失败时 context 带 reservation_id，预留仍在）
    """
    try:
        return await engine.purchases.buy(req)
    except (ValidityInsufficient, InsufficientStock) as e:
        rejection = PurchaseRejection.from_error(e)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=rejection.model_dump(mode="json"),
        )
