# perishable/models/item.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from perishable.db.base import Base, UTCDateTime
from perishable.utils.time import utcnow


class Item(Base):
    """
    可售商品（冷藏鸡蛋等）：

        qty_available     当前可售数量（已扣除 pending / committed 预留）
        min_safety_stock  安全库存，评估可售时从 qty_available 中扣除
        expires_at        保质期截止；NULL 表示非易腐品
        category          蛋品类型，用于挑选替代品
        origin            产地 / 农场名称，写入支付单附言便于争议追溯

    qty_available 只允许经由 ReservationLedger 修改（每次修改都写 stock_movements）。
    """

    __tablename__ = "items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)

    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    category: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    origin: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)

    qty_available: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    min_safety_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        sa.CheckConstraint("qty_available >= 0", name="ck_items_qty_available_nonneg"),
        sa.CheckConstraint("min_safety_stock >= 0", name="ck_items_min_safety_nonneg"),
    )

    @property
    def is_perishable(self) -> bool:
        return self.expires_at is not None

    @property
    def sellable_qty(self) -> int:
        """扣除安全库存后的可售量（可能为负）。"""
        return int(self.qty_available) - int(self.min_safety_stock)

    def __repr__(self) -> str:
        return (
            f"<Item id={self.id} sku={self.sku} avail={self.qty_available} "
            f"safety={self.min_safety_stock} exp={self.expires_at}>"
        )
