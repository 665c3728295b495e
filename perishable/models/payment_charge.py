# perishable/models/payment_charge.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from perishable.db.base import Base, UTCDateTime
from perishable.models.enums import ChargeStatus


class PaymentCharge(Base):
    """
    PIX 收款单（与 reservation 一一对应）

    - id：交易号 txid（由我方生成并提交给支付供应商）
    - expires_at：必须等于 reservation.payment_deadline，不得更长
    - raw_payload：供应商原始返回 / webhook 原文，仅审计用
    - delivery_requested_at：paid 之后 DeliveryRequest 已交给排期队列的时间
    """

    __tablename__ = "payment_charges"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)

    reservation_id: Mapped[str] = mapped_column(
        sa.String(40), sa.ForeignKey("reservations.id"), nullable=False, unique=True
    )

    amount: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=ChargeStatus.PENDING.value
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    qr_payload: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(sa.JSON, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    # 配送请求成功投递的时间；paid 但为空 = 投递未完成，重放 paid 时补发
    delivery_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (sa.Index("ix_payment_charges_status", "status"),)

    def __repr__(self) -> str:
        return (
            f"<PaymentCharge id={self.id} rsv={self.reservation_id} "
            f"amount={self.amount} status={self.status}>"
        )
