# perishable/services/payment_issuer.py
from __future__ import annotations

import logging
import math
import secrets
import string
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.core.tx import tx_scope
from perishable.domain.errors import ProviderError
from perishable.models.enums import ChargeStatus
from perishable.models.item import Item
from perishable.models.payment_charge import PaymentCharge
from perishable.models.reservation import Reservation
from perishable.obs.metrics import provider_errors_total, provider_latency
from perishable.ports import DeliveryFeeQuoter, PaymentProvider
from perishable.utils.time import Clock, utcnow

logger = logging.getLogger("perishable.payment")

CENTS = Decimal("0.01")
_TXID_ALPHABET = string.ascii_uppercase + string.digits


def new_txid(now: datetime) -> str:
    """EGG + UTC 时间戳 + 8 位随机大写串（PIX txid 只允许字母数字）"""
    suffix = "".join(secrets.choice(_TXID_ALPHABET) for _ in range(8))
    return f"EGG{now.strftime('%Y%m%d%H%M%S')}{suffix}"


def charge_amount(unit_price: Decimal, qty: int, delivery_fee: Decimal) -> Decimal:
    total = Decimal(unit_price) * int(qty) + Decimal(delivery_fee)
    return total.quantize(CENTS, rounding=ROUND_HALF_UP)


def build_charge_metadata(
    *, item: Item, qty: int, delivery_estimate: Optional[datetime]
) -> Dict[str, str]:
    """
    付款单附言（仅描述性，用于争议追溯，不影响结算逻辑）。
    """
    return {
        "product": f"{int(qty)}x {item.name}",
        "expiry": item.expires_at.strftime("%d/%m/%Y") if item.expires_at else "non-perishable",
        "delivery": delivery_estimate.strftime("%d/%m/%Y") if delivery_estimate else "-",
        "origin": item.origin or "-",
    }


class PaymentRequestIssuer:
    """
    为一张 pending 预留开具限时 PIX 收款单。

    - 金额 = 单价 × 数量 + 运费（运费由外部报价方给出）
    - 付款单过期时间 == reservation.payment_deadline（绝不更长）
    - 供应商调用不持有任何锁；失败抛 ProviderError，不回滚 hold
      （由调用方决定重试开单还是主动 release；否则 TTL 扫描会回收）
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        provider: PaymentProvider,
        fees: DeliveryFeeQuoter,
        clock: Clock = utcnow,
    ) -> None:
        self._maker = session_maker
        self._provider = provider
        self._fees = fees
        self._clock = clock

    async def issue_charge(
        self,
        reservation: Reservation,
        item: Item,
        buyer_id: str,
        delivery_estimate: Optional[datetime],
    ) -> PaymentCharge:
        now = self._clock()
        remaining = (reservation.payment_deadline - now).total_seconds()
        if remaining <= 0:
            raise ProviderError(
                "payment",
                f"reservation {reservation.id} payment window already closed",
                context={"reservation_id": reservation.id},
            )
        # 向下取整：供应商侧过期时间不得晚于预留截止
        expires_in = int(math.floor(remaining))

        fee = Decimal(await self._fees.quote(reservation.destination))
        amount = charge_amount(item.unit_price, reservation.qty, fee)
        txid = new_txid(now)
        metadata = build_charge_metadata(
            item=item, qty=reservation.qty, delivery_estimate=delivery_estimate
        )

        started = time.perf_counter()
        try:
            created = await self._provider.create_charge(
                txid=txid,
                amount=amount,
                expires_in_seconds=expires_in,
                metadata=metadata,
            )
        except ProviderError:
            provider_errors_total.labels("payment").inc()
            logger.warning(
                "charge issuance failed rsv=%s buyer=%s amount=%s", reservation.id, buyer_id, amount
            )
            raise
        finally:
            provider_latency.labels("payment").observe(time.perf_counter() - started)

        charge = PaymentCharge(
            id=created.charge_id or txid,
            reservation_id=reservation.id,
            amount=amount,
            delivery_fee=fee.quantize(CENTS, rounding=ROUND_HALF_UP),
            status=ChargeStatus.PENDING.value,
            failure_reason=None,
            qr_payload=created.qr_payload,
            raw_payload=created.raw,
            expires_at=reservation.payment_deadline,
            created_at=now,
            paid_at=None,
            updated_at=now,
        )
        async with self._maker() as session:
            async with tx_scope(session):
                session.add(charge)

        logger.info(
            "charge issued id=%s rsv=%s buyer=%s amount=%s expires_at=%s",
            charge.id,
            reservation.id,
            buyer_id,
            amount,
            charge.expires_at.isoformat(),
        )
        return charge
