# perishable/services/movement_writer.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from perishable.models.enums import MovementReason
from perishable.models.stock_movement import StockMovement


async def write_movement(
    session: AsyncSession,
    *,
    item_id: int,
    reason: MovementReason,
    delta: int,
    after_qty: int,
    occurred_at: datetime,
    reservation_id: Optional[str] = None,
    note: Optional[str] = None,
) -> int:
    """
    追加一条库存流水，返回新 id。

    - 必须在持有 item 锁 + 事务内调用，after_qty 取自同一事务内的 items.qty_available
    - 唯一索引 (reservation_id, reason) 兜底：同一预留重复记账直接 IntegrityError，
      整个事务回滚（不会出现“回补两次”）
    """
    stmt = (
        insert(StockMovement)
        .values(
            item_id=int(item_id),
            delta=int(delta),
            after_qty=int(after_qty),
            reason=MovementReason(reason).value,
            reservation_id=reservation_id,
            note=note,
            occurred_at=occurred_at,
        )
        .returning(StockMovement.id)
    )
    res = await session.execute(stmt)
    return int(res.scalar_one())


async def list_movements(session: AsyncSession, item_id: int) -> List[StockMovement]:
    """按因果序（id 递增）返回某 item 的全部流水"""
    res = await session.execute(
        select(StockMovement).where(StockMovement.item_id == int(item_id)).order_by(StockMovement.id)
    )
    return list(res.scalars().all())


def chain_breaks(movements: Sequence[StockMovement]) -> List[int]:
    """
    校验流水链：每条 after_qty == 上一条 after_qty + delta。

    返回断链处的 movement id 列表（空列表表示链完整）。
    第一条无前驱，不参与校验。
    """
    breaks: List[int] = []
    prev: Optional[StockMovement] = None
    for mv in movements:
        if prev is not None and int(prev.after_qty) + int(mv.delta) != int(mv.after_qty):
            breaks.append(int(mv.id))
        prev = mv
    return breaks
