# perishable/schemas/delivery.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from perishable.models.enums import DeliveryPriority


class DeliveryRequest(BaseModel):
    """
    结算成功后发出的配送排期请求（本引擎不落库，由外部排期服务消费）。
    """

    reservation_id: str
    item_id: int
    qty: int
    destination: str
    window_start: datetime
    window_end: datetime
    priority: DeliveryPriority = DeliveryPriority.HIGH
