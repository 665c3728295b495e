# perishable/models/stock_movement.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from perishable.db.base import Base, UTCDateTime


class StockMovement(Base):
    """
    库存流水（只增不改）

    - delta：有符号变动；reservation_commit 恒为 0（仅为审计连续性）
    - after_qty：本条写入后 items.qty_available 的值
    - 同一 item 内：after_qty == 上一条 after_qty + delta（按 id 递增即因果序）
    """

    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    item_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("items.id"), nullable=False, index=True
    )
    delta: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    after_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reason: Mapped[str] = mapped_column(sa.String(32), nullable=False)

    reservation_id: Mapped[Optional[str]] = mapped_column(
        sa.String(40), sa.ForeignKey("reservations.id"), nullable=True, index=True
    )
    note: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        # 同一预留同一 reason 只记一次（exactly-once bookkeeping 的最后防线）
        sa.Index(
            "uq_movements_reservation_reason",
            "reservation_id",
            "reason",
            unique=True,
        ),
        sa.Index("ix_movements_item_id_id", "item_id", "id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Movement {self.reason} item={self.item_id} delta={self.delta} "
            f"after={self.after_qty} rsv={self.reservation_id}>"
        )
