# perishable/models/reservation.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from perishable.db.base import Base, UTCDateTime
from perishable.models.enums import ReservationStatus


class Reservation(Base):
    """
    独占预留：创建时已从 items.qty_available 扣减。

    生命周期：pending → committed | expired | cancelled（终态只进入一次）
      - expired / cancelled：qty 恰好回补一次
      - committed：永不回补
    """

    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(sa.String(40), primary_key=True)

    item_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("items.id"), nullable=False, index=True
    )
    qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=ReservationStatus.PENDING.value
    )

    buyer_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    destination: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    payment_deadline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    committed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="ck_reservations_qty_pos"),
        # TTL 扫描：status='pending' AND payment_deadline <= now
        sa.Index("ix_reservations_status_deadline", "status", "payment_deadline"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == ReservationStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"<Reservation id={self.id} item={self.item_id} qty={self.qty} "
            f"status={self.status} deadline={self.payment_deadline}>"
        )
