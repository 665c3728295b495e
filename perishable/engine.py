# perishable/engine.py
# 引擎装配：所有服务共享同一个 session 工厂 / item 锁表 / 读穿缓存
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.core.config import AppSettings
from perishable.ports import (
    BuyerNotifier,
    DeliveryFeeQuoter,
    DeliveryScheduler,
    EtaProvider,
    OriginNotifier,
    PaymentProvider,
    RestockPlanner,
)
from perishable.schemas.item import ExpiringItem
from perishable.services.expiry_sweeper import SweepReport, sweep_expired_reservations
from perishable.services.item_locks import ItemLockRegistry
from perishable.services.item_queries import ItemQueries
from perishable.services.payment_issuer import PaymentRequestIssuer
from perishable.services.purchase_flow import PurchaseFlow
from perishable.services.query_cache import QueryCache
from perishable.services.reservation_ledger import ReservationLedger
from perishable.services.settlement_handler import SettlementHandler
from perishable.services.validity_evaluator import DeliveryPolicy, ValidityEvaluator
from perishable.utils.time import Clock, utcnow

logger = logging.getLogger("perishable.engine")


@dataclass
class Engine:
    settings: AppSettings
    session_maker: async_sessionmaker[AsyncSession]
    cache: QueryCache
    locks: ItemLockRegistry
    ledger: ReservationLedger
    queries: ItemQueries
    evaluator: ValidityEvaluator
    issuer: PaymentRequestIssuer
    settlement: SettlementHandler
    purchases: PurchaseFlow
    clock: Clock = utcnow

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return await sweep_expired_reservations(
            self.session_maker,
            self.ledger,
            now=now or self.clock(),
            batch_size=self.settings.SWEEP_BATCH_SIZE,
        )

    async def expiring_alerts(self, within_days: Optional[int] = None) -> List[ExpiringItem]:
        days = self.settings.EXPIRY_ALERT_DAYS if within_days is None else int(within_days)
        return await self.queries.expiring_soon(within_days=days, now=self.clock())


def assemble_engine(
    settings: AppSettings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    eta: Optional[EtaProvider] = None,
    payment: Optional[PaymentProvider] = None,
    delivery: Optional[DeliveryScheduler] = None,
    notifier: Optional[OriginNotifier] = None,
    buyer_notifier: Optional[BuyerNotifier] = None,
    fees: Optional[DeliveryFeeQuoter] = None,
    restock: Optional[RestockPlanner] = None,
    clock: Clock = utcnow,
) -> Engine:
    """
    按配置装配引擎；未显式传入的外部协作方使用默认适配器
    （HTTP ETA / PIX / Celery 队列与通知 / 固定运费 / 固定补货节奏）。
    """
    if eta is None:
        from perishable.adapters.eta_http import HttpEtaProvider

        eta = HttpEtaProvider(settings.ETA_BASE_URL, timeout=settings.ETA_TIMEOUT_SECONDS)
    if payment is None:
        from perishable.adapters.pix_provider import PixPaymentProvider

        payment = PixPaymentProvider(
            settings.PAYMENT_BASE_URL,
            access_token=settings.PAYMENT_ACCESS_TOKEN,
            pix_key=settings.PAYMENT_PIX_KEY,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
        )
    if delivery is None or notifier is None or buyer_notifier is None:
        # Celery app 只在需要默认队列实现时加载
        from perishable.adapters.delivery import (
            CeleryBuyerNotifier,
            CeleryDeliveryScheduler,
            CeleryOriginNotifier,
        )
        from perishable.worker import celery

        delivery = delivery or CeleryDeliveryScheduler(celery)
        notifier = notifier or CeleryOriginNotifier(celery)
        buyer_notifier = buyer_notifier or CeleryBuyerNotifier(celery)
    if fees is None or restock is None:
        from perishable.adapters.delivery import CadenceRestockPlanner, FlatFeeQuoter

        fees = fees or FlatFeeQuoter(settings.DELIVERY_FEE_DEFAULT)
        cadence = (
            timedelta(hours=settings.RESTOCK_CADENCE_HOURS) if settings.RESTOCK_CADENCE_HOURS else None
        )
        restock = restock or CadenceRestockPlanner(cadence, clock=clock)

    cache = QueryCache(ttl_seconds=settings.CACHE_TTL_SECONDS)
    locks = ItemLockRegistry()
    ledger = ReservationLedger(
        session_maker,
        locks=locks,
        cache=cache,
        payment_window=timedelta(minutes=settings.PAYMENT_WINDOW_MINUTES),
        clock=clock,
    )
    queries = ItemQueries(session_maker, cache)
    evaluator = ValidityEvaluator(
        eta=eta,
        queries=queries,
        restock=restock,
        policy=DeliveryPolicy(
            window_label=settings.DELIVERY_WINDOW_LABEL,
            care_recommendation=settings.CARE_RECOMMENDATION,
        ),
    )
    issuer = PaymentRequestIssuer(session_maker, provider=payment, fees=fees, clock=clock)
    settlement = SettlementHandler(
        session_maker,
        ledger=ledger,
        provider=payment,
        delivery=delivery,
        notifier=notifier,
        buyer_notifier=buyer_notifier,
        delivery_window=timedelta(hours=settings.DELIVERY_WINDOW_HOURS),
        clock=clock,
    )
    purchases = PurchaseFlow(
        session_maker,
        queries=queries,
        evaluator=evaluator,
        ledger=ledger,
        issuer=issuer,
    )
    logger.info(
        "engine ready payment_window=%smin cache_ttl=%ss",
        settings.PAYMENT_WINDOW_MINUTES,
        settings.CACHE_TTL_SECONDS,
    )
    return Engine(
        settings=settings,
        session_maker=session_maker,
        cache=cache,
        locks=locks,
        ledger=ledger,
        queries=queries,
        evaluator=evaluator,
        issuer=issuer,
        settlement=settlement,
        purchases=purchases,
        clock=clock,
    )
