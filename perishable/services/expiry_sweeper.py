# perishable/services/expiry_sweeper.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.core.tx import tx_scope
from perishable.domain.errors import AlreadyTerminal, NotFound
from perishable.models.enums import ChargeStatus, ReleaseReason
from perishable.models.payment_charge import PaymentCharge
from perishable.obs.metrics import (
    reservation_race_lost_total,
    reservation_releases_total,
    sweeper_expired_total,
    sweeper_runs_total,
)
from perishable.services.reservation_ledger import ReservationLedger
from perishable.utils.time import utcnow

logger = logging.getLogger("perishable.sweeper")


@dataclass
class SweepReport:
    scanned: int = 0
    expired: int = 0
    lost_race: int = 0  # 结算先到：AlreadyTerminal，正常结果
    charges_expired: int = 0


async def _expire_one(
    session_maker: async_sessionmaker[AsyncSession],
    ledger: ReservationLedger,
    reservation_id: str,
    now: datetime,
) -> bool:
    """
    item 锁 + 单事务：预留 pending → expired（回补库存），
    同时把仍为 pending 的收款单置 expired。返回是否有收款单被置为 expired。
    """
    item_id = await ledger.item_id_of(reservation_id)
    async with ledger.item_lock(item_id):
        async with session_maker() as session:
            async with tx_scope(session):
                rsv, category = await ledger.release_in_tx(
                    session, reservation_id, reason=ReleaseReason.EXPIRED
                )
                res = await session.execute(
                    update(PaymentCharge)
                    .where(
                        PaymentCharge.reservation_id == reservation_id,
                        PaymentCharge.status == ChargeStatus.PENDING.value,
                    )
                    .values(status=ChargeStatus.EXPIRED.value, updated_at=now)
                    .returning(PaymentCharge.id)
                    .execution_options(synchronize_session=False)
                )
                charge_expired = res.first() is not None

    ledger.invalidate(rsv.item_id, category)
    reservation_releases_total.labels(ReleaseReason.EXPIRED.value).inc()
    logger.info("expired rsv=%s item=%s qty=%s restored", rsv.id, rsv.item_id, rsv.qty)
    return charge_expired


async def sweep_expired_reservations(
    session_maker: async_sessionmaker[AsyncSession],
    ledger: ReservationLedger,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> SweepReport:
    """
    扫描并回收超过付款截止的 pending 预留。

    语义：
      - 候选：status='pending' AND payment_deadline <= now（只读扫描，不加锁）
      - 每个候选在 item 锁 + 单事务内 release(reason=expired)：
          * 首次：pending → expired，库存回补一次，pending 收款单一并置 expired
          * AlreadyTerminal：结算已抢先提交 / 已取消，计入 lost_race，不算错误
      - 只有本函数会把预留置为 expired

    返回 SweepReport（本次扫描 / 过期 / 竞争失败数量）。
    """
    if now is None:
        now = utcnow()

    report = SweepReport()
    seen: Set[str] = set()
    sweeper_runs_total.inc()

    while True:
        batch = await ledger.due_for_expiry(now=now, limit=batch_size)
        ids = [rid for rid in batch if rid not in seen]
        if not ids:
            break

        for rid in ids:
            seen.add(rid)
            report.scanned += 1
            try:
                charge_expired = await _expire_one(session_maker, ledger, rid, now)
            except AlreadyTerminal as e:
                report.lost_race += 1
                reservation_race_lost_total.labels("expire").inc()
                logger.info("sweep skip rsv=%s already %s", rid, e.status)
                continue
            except NotFound:
                report.lost_race += 1
                logger.info("sweep skip rsv=%s vanished", rid)
                continue

            report.expired += 1
            sweeper_expired_total.inc()
            if charge_expired:
                report.charges_expired += 1

        if len(batch) < batch_size:
            break

    if report.scanned:
        logger.info(
            "sweep done scanned=%d expired=%d lost_race=%d charges_expired=%d",
            report.scanned,
            report.expired,
            report.lost_race,
            report.charges_expired,
        )
    return report
