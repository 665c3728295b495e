# perishable/tasks.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from perishable.core.config import get_settings
from perishable.db.session import build_engine, build_session_maker
from perishable.services.expiry_sweeper import sweep_expired_reservations
from perishable.services.item_queries import ItemQueries
from perishable.services.query_cache import QueryCache
from perishable.services.reservation_ledger import ReservationLedger
from perishable.worker import celery

logger = logging.getLogger("perishable.tasks")


async def _sweep_once() -> Dict[str, int]:
    """
    worker 进程内没有常驻事件循环：每次任务自建 engine（NullPool / pre_ping），
    用完即 dispose。跨进程互斥由条件 UPDATE 保证，进程内锁表只是局部的。
    """
    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL)
    try:
        maker = build_session_maker(engine)
        ledger = ReservationLedger(maker)
        report = await sweep_expired_reservations(maker, ledger, batch_size=settings.SWEEP_BATCH_SIZE)
        return {
            "scanned": report.scanned,
            "expired": report.expired,
            "lost_race": report.lost_race,
            "charges_expired": report.charges_expired,
        }
    finally:
        await engine.dispose()


async def _expiring_once() -> int:
    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL)
    try:
        queries = ItemQueries(build_session_maker(engine), QueryCache(ttl_seconds=0))
        rows = await queries.expiring_soon(within_days=settings.EXPIRY_ALERT_DAYS)
        for row in rows:
            logger.warning(
                "stock expiring soon item=%s sku=%s qty=%s expires_at=%s origin=%s",
                row.item_id,
                row.sku,
                row.qty_available,
                row.expires_at.isoformat(),
                row.origin,
            )
        return len(rows)
    finally:
        await engine.dispose()


@celery.task(name="perishable.tasks.sweep_expired_reservations")
def sweep_expired_reservations_task() -> Dict[str, Any]:
    """Beat 定时触发：回收超过付款截止的 pending 预留。"""
    return asyncio.run(_sweep_once())


@celery.task(name="perishable.tasks.log_expiring_stock")
def log_expiring_stock() -> int:
    return asyncio.run(_expiring_once())
