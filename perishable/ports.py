# -*- coding: utf-8 -*-
# perishable/ports.py
# 外部协作方边界（只定义接口；实现见 perishable.adapters 与测试中的 fake）
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from perishable.models.item import Item
from perishable.schemas.delivery import DeliveryRequest


class EtaProvider(Protocol):
    """物流 ETA：目的地 → 预计送达时间；失败抛 ProviderError"""

    async def estimate(self, destination: str) -> datetime: ...


@dataclass
class ProviderCharge:
    charge_id: str
    qr_payload: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    async def create_charge(
        self,
        *,
        txid: str,
        amount: Decimal,
        expires_in_seconds: int,
        metadata: Dict[str, str],
    ) -> ProviderCharge: ...

    async def request_refund(self, *, charge_id: str, amount: Decimal, reason: str) -> None: ...


class DeliveryScheduler(Protocol):
    """配送排期：fire-and-forget，无返回值"""

    def schedule(self, request: DeliveryRequest) -> None: ...


class RestockPlanner(Protocol):
    """补货节奏：安全库存不足时给出下一个可送达日期（未知返回 None）"""

    async def next_feasible_delivery(self, item: Item, qty: int) -> Optional[datetime]: ...


class DeliveryFeeQuoter(Protocol):
    async def quote(self, destination: str) -> Decimal: ...


class OriginNotifier(Protocol):
    """结算成功后通知产地（农场）备货"""

    async def notify(self, *, item_id: int, qty: int, reservation_id: str) -> None: ...


class BuyerNotifier(Protocol):
    """结算成功后通知买家：已付款 + 配送窗口"""

    async def notify(
        self,
        *,
        buyer_id: str,
        reservation_id: str,
        destination: str,
        window_start: datetime,
        window_end: datetime,
    ) -> None: ...
