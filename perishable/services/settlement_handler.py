# perishable/services/settlement_handler.py
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.core.tx import tx_scope
from perishable.domain.errors import AlreadyTerminal, NotFound, ProviderError
from perishable.models.enums import ChargeStatus, DeliveryPriority
from perishable.models.payment_charge import PaymentCharge
from perishable.models.reservation import Reservation
from perishable.obs.metrics import (
    delivery_requests_total,
    provider_errors_total,
    settlement_events_total,
)
from perishable.ports import BuyerNotifier, DeliveryScheduler, OriginNotifier, PaymentProvider
from perishable.schemas.delivery import DeliveryRequest
from perishable.schemas.settlement import (
    ExpiredConfirmation,
    FailedConfirmation,
    PaidConfirmation,
    SettlementOutcome,
)
from perishable.services.reservation_ledger import ReservationLedger
from perishable.utils.time import Clock, utcnow

logger = logging.getLogger("perishable.settlement")

EXPIRED_BEFORE_PAYMENT = "reservation_expired_before_payment"


class SettlementHandler:
    """
    消费支付确认事件（至少一次投递，必须幂等）。

    paid：
      在 item 锁 + 单事务内：
        - 收款单已 paid 且配送已投递 / 已补偿 → DUPLICATE（no-op）
        - Ledger.commit_in_tx 成功            → 收款单 paid，事务提交后投递唯一一条 DeliveryRequest
        - AlreadyTerminal（TTL 已回收）        → 收款单 failed + 退款信号（补偿分支）
      投递成功后才写 delivery_requested_at；投递失败时异常上抛（webhook 非 2xx，供应商重投），
      重投的 paid 看到 “paid 但未投递” 会补发配送与通知。
    failed / expired：
      只改收款单状态，不动台账（pending 预留交给 TTL 扫描自然过期）。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        ledger: ReservationLedger,
        provider: PaymentProvider,
        delivery: DeliveryScheduler,
        notifier: Optional[OriginNotifier] = None,
        buyer_notifier: Optional[BuyerNotifier] = None,
        delivery_window: timedelta = timedelta(hours=4),
        clock: Clock = utcnow,
    ) -> None:
        self._maker = session_maker
        self._ledger = ledger
        self._provider = provider
        self._delivery = delivery
        self._notifier = notifier
        self._buyer_notifier = buyer_notifier
        self._window = delivery_window
        self._clock = clock

    async def handle(self, event) -> SettlementOutcome:
        charge = await self._load_charge(event.charge_id)

        if isinstance(event, PaidConfirmation):
            outcome = await self._on_paid(charge, event)
        elif isinstance(event, FailedConfirmation):
            outcome = await self._on_negative(charge, event, ChargeStatus.FAILED)
        elif isinstance(event, ExpiredConfirmation):
            outcome = await self._on_negative(charge, event, ChargeStatus.EXPIRED)
        else:
            logger.warning(
                "unknown provider status charge=%s status=%r; payload kept for audit only",
                charge.id,
                getattr(event, "provider_status", None),
            )
            outcome = SettlementOutcome.IGNORED

        settlement_events_total.labels(outcome.value).inc()
        return outcome

    async def _load_charge(self, charge_id: str) -> PaymentCharge:
        async with self._maker() as session:
            charge = await session.get(PaymentCharge, charge_id)
        if charge is None:
            # 供应商重复 / 误投的 webhook：记录，不重试
            logger.warning("confirmation for unknown charge=%s", charge_id)
            raise NotFound("payment_charge", charge_id)
        return charge

    # ------------------------------------------------------------------
    # paid
    # ------------------------------------------------------------------
    async def _on_paid(self, charge: PaymentCharge, event: PaidConfirmation) -> SettlementOutcome:
        item_id = await self._ledger.item_id_of(charge.reservation_id)
        rsv: Optional[Reservation] = None
        category: Optional[str] = None
        resume = False

        async with self._ledger.item_lock(item_id):
            async with self._maker() as session:
                async with tx_scope(session):
                    current = (
                        await session.execute(
                            select(PaymentCharge)
                            .where(PaymentCharge.id == charge.id)
                            .with_for_update()
                            .execution_options(populate_existing=True)
                        )
                    ).scalar_one()

                    if current.status == ChargeStatus.PAID:
                        if current.delivery_requested_at is not None:
                            logger.info("duplicate paid confirmation charge=%s", current.id)
                            return SettlementOutcome.DUPLICATE
                        # 已提交但上次配送投递失败
                        resume = True
                    elif (
                        current.status == ChargeStatus.FAILED
                        and current.failure_reason == EXPIRED_BEFORE_PAYMENT
                    ):
                        logger.info("duplicate paid confirmation charge=%s (compensated)", current.id)
                        return SettlementOutcome.DUPLICATE
                    else:
                        now = self._clock()
                        current.raw_payload = event.raw_payload
                        current.updated_at = now
                        try:
                            rsv, category = await self._ledger.commit_in_tx(session, current.reservation_id)
                        except AlreadyTerminal as e:
                            current.status = ChargeStatus.FAILED.value
                            current.failure_reason = EXPIRED_BEFORE_PAYMENT
                            logger.info(
                                "payment arrived after reservation ended charge=%s rsv=%s status=%s",
                                current.id,
                                current.reservation_id,
                                e.status,
                            )
                        else:
                            current.status = ChargeStatus.PAID.value
                            current.failure_reason = None
                            current.paid_at = now

        if resume:
            logger.warning("resuming delivery dispatch for paid charge=%s", current.id)
            rsv = await self._ledger.get_reservation(current.reservation_id)
        elif rsv is None:
            await self._compensate(current)
            return SettlementOutcome.COMPENSATED
        else:
            self._ledger.invalidate(rsv.item_id, category)

        await self._dispatch(rsv, current)
        return SettlementOutcome.COMMITTED

    async def _dispatch(self, rsv: Reservation, charge: PaymentCharge) -> None:
        """
        提交之后（不持锁）：投递配送请求 → 记 delivery_requested_at → 通知产地与买家。
        窗口从 paid_at 起算，重发时请求内容不变，消费方可按 reservation_id 去重。
        """
        request = DeliveryRequest(
            reservation_id=rsv.id,
            item_id=rsv.item_id,
            qty=rsv.qty,
            destination=rsv.destination,
            window_start=charge.paid_at,
            window_end=charge.paid_at + self._window,
            priority=DeliveryPriority.HIGH,
        )
        await self._emit_delivery(request)
        await self._mark_delivery_requested(charge.id)
        await self._notify_origin(rsv)
        await self._notify_buyer(rsv, request)

    async def _emit_delivery(self, request: DeliveryRequest) -> None:
        # 队列投递是阻塞 I/O（broker 连接），放到线程池里跑
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._delivery.schedule, request)
        except ProviderError:
            provider_errors_total.labels("delivery").inc()
            logger.error("delivery request not queued rsv=%s; awaiting paid redelivery", request.reservation_id)
            raise
        delivery_requests_total.inc()
        logger.info(
            "delivery requested rsv=%s dest=%s window_end=%s",
            request.reservation_id,
            request.destination,
            request.window_end.isoformat(),
        )

    async def _mark_delivery_requested(self, charge_id: str) -> None:
        async with self._maker() as session:
            async with tx_scope(session):
                await session.execute(
                    update(PaymentCharge)
                    .where(PaymentCharge.id == charge_id, PaymentCharge.delivery_requested_at.is_(None))
                    .values(delivery_requested_at=self._clock())
                    .execution_options(synchronize_session=False)
                )

    async def _notify_origin(self, rsv: Reservation) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(item_id=rsv.item_id, qty=rsv.qty, reservation_id=rsv.id)
        except ProviderError as e:
            # 通知失败不回滚结算
            provider_errors_total.labels("origin_notifier").inc()
            logger.warning("origin notification failed rsv=%s: %s", rsv.id, e)

    async def _notify_buyer(self, rsv: Reservation, request: DeliveryRequest) -> None:
        if self._buyer_notifier is None:
            return
        try:
            await self._buyer_notifier.notify(
                buyer_id=rsv.buyer_id,
                reservation_id=rsv.id,
                destination=rsv.destination,
                window_start=request.window_start,
                window_end=request.window_end,
            )
        except ProviderError as e:
            provider_errors_total.labels("buyer_notifier").inc()
            logger.warning("buyer confirmation failed rsv=%s buyer=%s: %s", rsv.id, rsv.buyer_id, e)

    async def _compensate(self, charge: PaymentCharge) -> None:
        try:
            await self._provider.request_refund(
                charge_id=charge.id, amount=charge.amount, reason=EXPIRED_BEFORE_PAYMENT
            )
        except ProviderError as e:
            # 收款单已记为 failed，退款重试由支付侧对账负责
            provider_errors_total.labels("payment_refund").inc()
            logger.error("refund request failed charge=%s amount=%s: %s", charge.id, charge.amount, e)
        else:
            logger.info("refund requested charge=%s amount=%s", charge.id, charge.amount)

    # ------------------------------------------------------------------
    # failed / expired
    # ------------------------------------------------------------------
    async def _on_negative(
        self,
        charge: PaymentCharge,
        event,
        status: ChargeStatus,
    ) -> SettlementOutcome:
        now = self._clock()
        async with self._maker() as session:
            async with tx_scope(session):
                res = await session.execute(
                    update(PaymentCharge)
                    .where(PaymentCharge.id == charge.id, PaymentCharge.status == ChargeStatus.PENDING.value)
                    .values(status=status.value, raw_payload=event.raw_payload, updated_at=now)
                    .returning(PaymentCharge.id)
                    .execution_options(synchronize_session=False)
                )
                changed = res.first() is not None

        if not changed:
            logger.info(
                "confirmation status=%s ignored for charge=%s in status=%s",
                status.value,
                charge.id,
                charge.status,
            )
            return SettlementOutcome.DUPLICATE if charge.status == status else SettlementOutcome.IGNORED

        logger.info("charge=%s marked %s (reservation left to expiry sweep)", charge.id, status.value)
        return (
            SettlementOutcome.MARKED_FAILED
            if status is ChargeStatus.FAILED
            else SettlementOutcome.MARKED_EXPIRED
        )
