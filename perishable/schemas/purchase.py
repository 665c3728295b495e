# perishable/schemas/purchase.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from perishable.schemas.validity import SubstituteItem


class BuyRequest(BaseModel):
    item_id: int
    qty: int = Field(gt=0)
    destination: str = Field(min_length=1, max_length=64)  # 例如 CEP
    buyer_id: str = Field(min_length=1, max_length=64)


class PaymentInstruction(BaseModel):
    """下单成功：买家凭此在 payment_deadline 之前完成支付"""

    reservation_id: str
    payment_deadline: datetime
    charge_id: str
    amount: Decimal
    charge_payload: Optional[str] = None  # PIX copia-e-cola / QR 内容
    estimated_delivery: Optional[datetime] = None


class PurchaseRejection(BaseModel):
    """结构化拒绝：reason + alternatives，足以驱动“重试 / 换货”决策"""

    reason: str
    message: str = ""
    alternatives: List[SubstituteItem] = Field(default_factory=list)
    next_delivery_date: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, err) -> "PurchaseRejection":
        """领域错误 → 结构化拒绝；context.reason 优先于错误码"""
        ctx = dict(getattr(err, "context", None) or {})
        alternatives = ctx.pop("alternatives", None) or []
        next_date = ctx.pop("next_delivery_date", None)
        return cls(
            reason=str(ctx.get("reason") or getattr(err, "code", "rejected")),
            message=getattr(err, "message", str(err)),
            alternatives=alternatives,
            next_delivery_date=next_date,
            context=ctx,
        )
