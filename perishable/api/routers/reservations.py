# perishable/api/routers/reservations.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from perishable.api.deps import get_engine
from perishable.engine import Engine
from perishable.schemas.purchase import PaymentInstruction
from perishable.schemas.reservation import ReservationOut

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.get("/{reservation_id}", response_model=ReservationOut)
async def get_reservation(
    reservation_id: str = Path(..., max_length=40),
    engine: Engine = Depends(get_engine),
) -> ReservationOut:
    rsv = await engine.ledger.get_reservation(reservation_id)
    return ReservationOut.model_validate(rsv)


@router.post("/{reservation_id}/cancel", response_model=ReservationOut)
async def cancel_reservation(
    reservation_id: str = Path(..., max_length=40),
    engine: Engine = Depends(get_engine),
) -> ReservationOut:
    """买家主动取消：pending → cancelled，库存回补；已终态返回 409。"""
    rsv = await engine.purchases.cancel(reservation_id)
    return ReservationOut.model_validate(rsv)


@router.post("/{reservation_id}/charge", response_model=PaymentInstruction)
async def retry_charge(
    reservation_id: str = Path(..., max_length=40),
    engine: Engine = Depends(get_engine),
) -> PaymentInstruction:
    """开单失败后重试开单（预留必须仍为 pending）"""
    return await engine.purchases.retry_charge(reservation_id)
