# perishable/schemas/item.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ExpiringItem(BaseModel):
    """临期告警行：有库存且在 N 天内过期"""

    item_id: int
    sku: str
    name: str
    category: str
    origin: Optional[str] = None
    qty_available: int
    expires_at: datetime
