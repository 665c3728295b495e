"""
统一导出 ORM 模型。
"""

from perishable.models.enums import (
    ChargeStatus,
    DeliveryPriority,
    MovementReason,
    ReleaseReason,
    ReservationStatus,
)
from perishable.models.item import Item
from perishable.models.payment_charge import PaymentCharge
from perishable.models.reservation import Reservation
from perishable.models.stock_movement import StockMovement

__all__ = [
    "ChargeStatus",
    "DeliveryPriority",
    "Item",
    "MovementReason",
    "PaymentCharge",
    "ReleaseReason",
    "Reservation",
    "ReservationStatus",
    "StockMovement",
]
