# perishable/services/reservation_ledger.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.core.tx import tx_scope
from perishable.domain.errors import AlreadyTerminal, InsufficientStock, NotFound
from perishable.models.enums import MovementReason, ReleaseReason, ReservationStatus
from perishable.models.item import Item
from perishable.models.reservation import Reservation
from perishable.models.stock_movement import StockMovement
from perishable.obs.metrics import (
    reservation_commits_total,
    reservation_holds_total,
    reservation_race_lost_total,
    reservation_releases_total,
)
from perishable.services.item_locks import ItemLockRegistry
from perishable.services.movement_writer import chain_breaks, list_movements, write_movement
from perishable.services.query_cache import QueryCache
from perishable.utils.time import Clock, utcnow

logger = logging.getLogger("perishable.ledger")

PENDING = ReservationStatus.PENDING.value


def new_reservation_id() -> str:
    return f"res_{uuid.uuid4().hex}"


class ReservationLedger:
    """
    预留台账（事务核心）

    对外三件事：
      - hold     ：检查 qty <= qty_available 并扣减（不可分割），建 pending 预留
      - release  ：pending → expired / cancelled，恰好回补一次
      - commit   ：pending → committed，不回补（库存在 hold 时已扣）

    并发纪律（同一 item 上所有写操作一致）：
      1) 先取 item 锁（进程内），再开事务
      2) 事务内用条件 UPDATE 做 compare-and-set：
           items        WHERE qty_available >= :qty
           reservations WHERE status = 'pending'
         多进程部署时由数据库行锁保证同样的语义
      3) 每次库存变化都在同一事务里追加一条 stock_movements

    *_in_tx 系列供需要把多步写入放进同一事务的调用方使用（例如结算），
    调用方必须已经持有 item_lock(item_id) 并处于事务中。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        locks: Optional[ItemLockRegistry] = None,
        cache: Optional[QueryCache] = None,
        payment_window: timedelta = timedelta(minutes=30),
        clock: Clock = utcnow,
    ) -> None:
        self._maker = session_maker
        self._locks = locks or ItemLockRegistry()
        self._cache = cache
        self._window = payment_window
        self._clock = clock

    @property
    def payment_window(self) -> timedelta:
        return self._window

    def item_lock(self, item_id: int):
        return self._locks.hold(item_id)

    def invalidate(self, item_id: int, category: Optional[str]) -> None:
        if self._cache is not None:
            self._cache.invalidate(item_ids=[item_id], categories=[category] if category else [])

    # ------------------------------------------------------------------
    # hold
    # ------------------------------------------------------------------
    async def hold(
        self,
        *,
        item_id: int,
        qty: int,
        buyer_id: str,
        destination: str,
    ) -> Reservation:
        qty = int(qty)
        if qty <= 0:
            raise ValueError(f"qty must be positive, got {qty}")

        try:
            async with self._locks.hold(item_id):
                async with self._maker() as session:
                    async with tx_scope(session):
                        rsv, category = await self._hold_in_tx(
                            session,
                            item_id=int(item_id),
                            qty=qty,
                            buyer_id=buyer_id,
                            destination=destination,
                        )
        except InsufficientStock:
            reservation_holds_total.labels("insufficient_stock").inc()
            raise

        reservation_holds_total.labels("ok").inc()
        self.invalidate(rsv.item_id, category)
        logger.info(
            "hold ok rsv=%s item=%s qty=%s deadline=%s",
            rsv.id,
            rsv.item_id,
            rsv.qty,
            rsv.payment_deadline.isoformat(),
        )
        return rsv

    async def _hold_in_tx(
        self,
        session: AsyncSession,
        *,
        item_id: int,
        qty: int,
        buyer_id: str,
        destination: str,
    ) -> Tuple[Reservation, str]:
        now = self._clock()

        res = await session.execute(
            update(Item)
            .where(Item.id == item_id, Item.qty_available >= qty)
            .values(qty_available=Item.qty_available - qty, updated_at=now)
            .returning(Item.qty_available, Item.category)
            .execution_options(synchronize_session=False)
        )
        row = res.first()
        if row is None:
            current = (
                await session.execute(select(Item.qty_available).where(Item.id == item_id))
            ).scalar_one_or_none()
            if current is None:
                raise NotFound("item", item_id)
            raise InsufficientStock(
                f"insufficient stock for item={item_id}: need {qty}, available={current}",
                context={"item_id": item_id, "requested": qty, "available": int(current)},
            )

        after_qty, category = int(row[0]), row[1]

        rsv = Reservation(
            id=new_reservation_id(),
            item_id=item_id,
            qty=qty,
            status=PENDING,
            buyer_id=buyer_id,
            destination=destination,
            created_at=now,
            payment_deadline=now + self._window,
            committed_at=None,
            released_at=None,
        )
        session.add(rsv)
        await session.flush()

        await write_movement(
            session,
            item_id=item_id,
            reason=MovementReason.RESERVATION_HOLD,
            delta=-qty,
            after_qty=after_qty,
            occurred_at=now,
            reservation_id=rsv.id,
        )
        return rsv, category

    # ------------------------------------------------------------------
    # release / cancel
    # ------------------------------------------------------------------
    async def release(self, reservation_id: str, *, reason: ReleaseReason) -> Reservation:
        """
        回补库存并置终态（expired 仅供 TTL 扫描使用；主动取消请用 cancel）。

        已是终态 → AlreadyTerminal，且不做任何库存变化。
        """
        reason = ReleaseReason(reason)
        item_id = await self.item_id_of(reservation_id)

        try:
            async with self._locks.hold(item_id):
                async with self._maker() as session:
                    async with tx_scope(session):
                        rsv, category = await self.release_in_tx(
                            session, reservation_id, reason=reason
                        )
        except AlreadyTerminal:
            reservation_race_lost_total.labels("release").inc()
            raise

        reservation_releases_total.labels(reason.value).inc()
        self.invalidate(rsv.item_id, category)
        logger.info("release ok rsv=%s item=%s qty=%s status=%s", rsv.id, rsv.item_id, rsv.qty, rsv.status)
        return rsv

    async def cancel(self, reservation_id: str) -> Reservation:
        """买家 / 后台主动取消（未付款前）。取消费用等业务策略由调用方决定。"""
        return await self.release(reservation_id, reason=ReleaseReason.CANCELLED)

    async def release_in_tx(
        self,
        session: AsyncSession,
        reservation_id: str,
        *,
        reason: ReleaseReason,
    ) -> Tuple[Reservation, str]:
        now = self._clock()
        terminal = ReleaseReason(reason).terminal_status.value

        res = await session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == PENDING)
            .values(status=terminal, released_at=now)
            .returning(Reservation.item_id, Reservation.qty)
            .execution_options(synchronize_session=False)
        )
        row = res.first()
        if row is None:
            await self._raise_not_pending(session, reservation_id)

        item_id, qty = int(row[0]), int(row[1])

        res = await session.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(qty_available=Item.qty_available + qty, updated_at=now)
            .returning(Item.qty_available, Item.category)
            .execution_options(synchronize_session=False)
        )
        after_qty, category = res.one()

        await write_movement(
            session,
            item_id=item_id,
            reason=MovementReason.RESERVATION_RELEASE,
            delta=qty,
            after_qty=int(after_qty),
            occurred_at=now,
            reservation_id=reservation_id,
            note=terminal,
        )
        return await self._reload(session, reservation_id), category

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------
    async def commit(self, reservation_id: str) -> Reservation:
        item_id = await self.item_id_of(reservation_id)

        try:
            async with self._locks.hold(item_id):
                async with self._maker() as session:
                    async with tx_scope(session):
                        rsv, category = await self.commit_in_tx(session, reservation_id)
        except AlreadyTerminal:
            reservation_race_lost_total.labels("commit").inc()
            raise

        self.invalidate(rsv.item_id, category)
        return rsv

    async def commit_in_tx(
        self, session: AsyncSession, reservation_id: str
    ) -> Tuple[Reservation, str]:
        now = self._clock()

        res = await session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == PENDING)
            .values(status=ReservationStatus.COMMITTED.value, committed_at=now)
            .returning(Reservation.item_id)
            .execution_options(synchronize_session=False)
        )
        row = res.first()
        if row is None:
            await self._raise_not_pending(session, reservation_id)

        item_id = int(row[0])
        after_qty, category = (
            await session.execute(
                select(Item.qty_available, Item.category).where(Item.id == item_id)
            )
        ).one()

        # delta=0：库存在 hold 时已扣，这里只为审计连续性
        await write_movement(
            session,
            item_id=item_id,
            reason=MovementReason.RESERVATION_COMMIT,
            delta=0,
            after_qty=int(after_qty),
            occurred_at=now,
            reservation_id=reservation_id,
        )
        reservation_commits_total.inc()
        logger.info("commit ok rsv=%s item=%s", reservation_id, item_id)
        return await self._reload(session, reservation_id), category

    # ------------------------------------------------------------------
    # manual adjustment（补货 / 报损）
    # ------------------------------------------------------------------
    async def adjust(self, *, item_id: int, delta: int, note: Optional[str] = None) -> int:
        """手工调整可售量，返回调整后的 qty_available；不允许调成负数。"""
        delta = int(delta)
        if delta == 0:
            raise ValueError("delta must be non-zero")

        async with self._locks.hold(item_id):
            async with self._maker() as session:
                async with tx_scope(session):
                    now = self._clock()
                    res = await session.execute(
                        update(Item)
                        .where(Item.id == int(item_id), Item.qty_available + delta >= 0)
                        .values(qty_available=Item.qty_available + delta, updated_at=now)
                        .returning(Item.qty_available, Item.category)
                        .execution_options(synchronize_session=False)
                    )
                    row = res.first()
                    if row is None:
                        current = (
                            await session.execute(
                                select(Item.qty_available).where(Item.id == int(item_id))
                            )
                        ).scalar_one_or_none()
                        if current is None:
                            raise NotFound("item", item_id)
                        raise InsufficientStock(
                            f"adjust would drive item={item_id} below zero",
                            context={"item_id": int(item_id), "delta": delta, "available": int(current)},
                        )
                    after_qty, category = int(row[0]), row[1]
                    await write_movement(
                        session,
                        item_id=int(item_id),
                        reason=MovementReason.MANUAL_ADJUSTMENT,
                        delta=delta,
                        after_qty=after_qty,
                        occurred_at=now,
                        note=note,
                    )

        self.invalidate(int(item_id), category)
        return after_qty

    # ------------------------------------------------------------------
    # 查询 / 审计
    # ------------------------------------------------------------------
    async def item_id_of(self, reservation_id: str) -> int:
        # item_id 创建后不再变化，无需加锁读取
        async with self._maker() as session:
            item_id = (
                await session.execute(
                    select(Reservation.item_id).where(Reservation.id == reservation_id)
                )
            ).scalar_one_or_none()
        if item_id is None:
            raise NotFound("reservation", reservation_id)
        return int(item_id)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        async with self._maker() as session:
            rsv = await session.get(Reservation, reservation_id)
        if rsv is None:
            raise NotFound("reservation", reservation_id)
        return rsv

    async def due_for_expiry(self, *, now: datetime, limit: int) -> List[str]:
        """pending 且 payment_deadline <= now 的预留 id（只读，不加锁）"""
        async with self._maker() as session:
            res = await session.execute(
                select(Reservation.id)
                .where(Reservation.status == PENDING, Reservation.payment_deadline <= now)
                .order_by(Reservation.payment_deadline, Reservation.id)
                .limit(int(limit))
            )
            return [str(r) for r in res.scalars().all()]

    async def movements(self, item_id: int) -> List[StockMovement]:
        async with self._maker() as session:
            return await list_movements(session, item_id)

    async def verify_movement_chain(self, item_id: int) -> List[int]:
        """返回断链的 movement id；空列表表示该 item 的流水可完整重放。"""
        return chain_breaks(await self.movements(item_id))

    async def _reload(self, session: AsyncSession, reservation_id: str) -> Reservation:
        res = await session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one()

    async def _raise_not_pending(self, session: AsyncSession, reservation_id: str) -> None:
        status = (
            await session.execute(select(Reservation.status).where(Reservation.id == reservation_id))
        ).scalar_one_or_none()
        if status is None:
            raise NotFound("reservation", reservation_id)
        raise AlreadyTerminal(reservation_id, str(status))
