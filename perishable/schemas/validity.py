# perishable/schemas/validity.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ValidityReason(str, Enum):
    ETA_UNAVAILABLE = "eta_unavailable"  # ETA 供应商失败（调用方可重试）
    VALIDITY_INSUFFICIENT = "validity_insufficient"  # 送达前过期
    INSUFFICIENT_SAFETY_STOCK = "insufficient_safety_stock"  # 扣除安全库存后不足


class SubstituteItem(BaseModel):
    """同品类替代品（保质期更晚或非易腐）"""

    item_id: int
    sku: str
    name: str
    expires_at: Optional[datetime] = None
    qty_available: int
    unit_price: Decimal


class ValidityResult(BaseModel):
    deliverable: bool
    reason: Optional[ValidityReason] = None
    estimated_delivery: Optional[datetime] = None

    # deliverable=True 时的静态策略数据
    delivery_window: Optional[str] = None
    recommendation: Optional[str] = None

    # validity_insufficient：替代品；insufficient_safety_stock：下一个可送达日期
    alternatives: List[SubstituteItem] = Field(default_factory=list)
    next_delivery_date: Optional[datetime] = None

    # 诊断字段（与原因码一起返回给调用方）
    expires_at: Optional[datetime] = None
    qty_available: Optional[int] = None
    qty_requested: Optional[int] = None
