# perishable/schemas/reservation.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from perishable.models.enums import ReservationStatus


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_id: int
    qty: int
    status: ReservationStatus
    buyer_id: str
    destination: str
    created_at: datetime
    payment_deadline: datetime
    committed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None


class AdjustRequest(BaseModel):
    delta: int = Field(description="正数补货，负数报损；不能为 0")
    note: Optional[str] = Field(default=None, max_length=255)

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class AdjustResult(BaseModel):
    item_id: int
    qty_available: int
