# perishable/services/purchase_flow.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.domain.errors import (
    AlreadyTerminal,
    InsufficientStock,
    NotFound,
    ProviderError,
    ValidityInsufficient,
)
from perishable.models.enums import ChargeStatus
from perishable.models.item import Item
from perishable.models.payment_charge import PaymentCharge
from perishable.models.reservation import Reservation
from perishable.schemas.purchase import BuyRequest, PaymentInstruction
from perishable.schemas.validity import ValidityReason, ValidityResult
from perishable.services.item_queries import ItemQueries
from perishable.services.payment_issuer import PaymentRequestIssuer
from perishable.services.reservation_ledger import ReservationLedger
from perishable.services.validity_evaluator import ValidityEvaluator

logger = logging.getLogger("perishable.purchase")


def _raise_for_verdict(item: Item, qty: int, verdict: ValidityResult) -> None:
    """把评估结论翻译成带结构化上下文的领域错误（reason + alternatives）。"""
    if verdict.deliverable:
        return

    if verdict.reason is ValidityReason.ETA_UNAVAILABLE:
        raise ProviderError(
            "eta",
            "delivery estimate unavailable, retry later",
            context={"reason": ValidityReason.ETA_UNAVAILABLE.value, "item_id": item.id},
        )

    if verdict.reason is ValidityReason.VALIDITY_INSUFFICIENT:
        raise ValidityInsufficient(
            f"item {item.id} expires before estimated delivery",
            context={
                "reason": ValidityReason.VALIDITY_INSUFFICIENT.value,
                "item_id": item.id,
                "expires_at": verdict.expires_at,
                "estimated_delivery": verdict.estimated_delivery,
                "alternatives": [a.model_dump() for a in verdict.alternatives],
            },
        )

    raise InsufficientStock(
        f"item {item.id} cannot cover qty={qty} above safety stock",
        context={
            "reason": ValidityReason.INSUFFICIENT_SAFETY_STOCK.value,
            "item_id": item.id,
            "requested": int(qty),
            "available": verdict.qty_available,
            "next_delivery_date": verdict.next_delivery_date,
        },
    )


class PurchaseFlow:
    """
    买单编排：评估 → hold → 开单。

    - 评估不通过 / hold 失败：抛带 reason 的领域错误，不留下任何预留
    - 开单失败（ProviderError）：hold 保留，错误上下文带 reservation_id，
      调用方可 retry_charge 或主动 cancel；都不做时由 TTL 扫描回收
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        queries: ItemQueries,
        evaluator: ValidityEvaluator,
        ledger: ReservationLedger,
        issuer: PaymentRequestIssuer,
    ) -> None:
        self._maker = session_maker
        self._queries = queries
        self._evaluator = evaluator
        self._ledger = ledger
        self._issuer = issuer

    async def buy(self, req: BuyRequest) -> PaymentInstruction:
        item = await self._queries.get_item(req.item_id)
        if item is None:
            raise NotFound("item", req.item_id)

        verdict = await self._evaluator.evaluate(item, req.qty, req.destination)
        _raise_for_verdict(item, req.qty, verdict)

        rsv = await self._ledger.hold(
            item_id=item.id,
            qty=req.qty,
            buyer_id=req.buyer_id,
            destination=req.destination,
        )

        try:
            charge = await self._issuer.issue_charge(
                rsv, item, req.buyer_id, verdict.estimated_delivery
            )
        except ProviderError as e:
            e.context.update(
                {
                    "reservation_id": rsv.id,
                    "payment_deadline": rsv.payment_deadline,
                    "hold_kept": True,
                }
            )
            raise

        logger.info(
            "purchase ok buyer=%s item=%s qty=%s rsv=%s charge=%s",
            req.buyer_id,
            item.id,
            req.qty,
            rsv.id,
            charge.id,
        )
        return self._instruction(rsv, charge, verdict.estimated_delivery)

    async def retry_charge(self, reservation_id: str) -> PaymentInstruction:
        """
        开单失败后重试：预留仍 pending 才开单；已有 pending 收款单直接返回（幂等）。
        """
        async with self._maker() as session:
            rsv = await session.get(Reservation, reservation_id)
            if rsv is None:
                raise NotFound("reservation", reservation_id)
            if not rsv.is_pending:
                raise AlreadyTerminal(rsv.id, rsv.status)
            item = await session.get(Item, rsv.item_id)
        existing = await self._charge_for(reservation_id)

        if existing is not None:
            if existing.status != ChargeStatus.PENDING:
                raise AlreadyTerminal(rsv.id, f"charge_{existing.status}")
            return self._instruction(rsv, existing, None)

        try:
            charge = await self._issuer.issue_charge(rsv, item, rsv.buyer_id, None)
        except IntegrityError:
            # 并发重试：另一请求已为同一预留落库收款单（reservation_id 唯一），以它为准
            existing = await self._charge_for(reservation_id)
            if existing is None:
                raise
            logger.info("concurrent retry_charge rsv=%s; returning charge=%s", reservation_id, existing.id)
            return self._instruction(rsv, existing, None)
        return self._instruction(rsv, charge, None)

    async def _charge_for(self, reservation_id: str) -> Optional[PaymentCharge]:
        async with self._maker() as session:
            return (
                await session.execute(
                    select(PaymentCharge).where(PaymentCharge.reservation_id == reservation_id)
                )
            ).scalar_one_or_none()

    async def cancel(self, reservation_id: str) -> Reservation:
        return await self._ledger.cancel(reservation_id)

    @staticmethod
    def _instruction(rsv: Reservation, charge: PaymentCharge, estimated) -> PaymentInstruction:
        return PaymentInstruction(
            reservation_id=rsv.id,
            payment_deadline=rsv.payment_deadline,
            charge_id=charge.id,
            amount=charge.amount,
            charge_payload=charge.qr_payload,
            estimated_delivery=estimated,
        )

