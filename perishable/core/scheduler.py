# perishable/core/scheduler.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from perishable.engine import Engine

logger = logging.getLogger("perishable.scheduler")

_scheduler: AsyncIOScheduler | None = None


async def _job_sweep(engine: "Engine") -> None:
    await engine.sweep()


async def _job_expiring_alerts(engine: "Engine") -> None:
    for row in await engine.expiring_alerts():
        logger.warning(
            "stock expiring soon item=%s sku=%s qty=%s expires_at=%s origin=%s",
            row.item_id,
            row.sku,
            row.qty_available,
            row.expires_at.isoformat(),
            row.origin,
        )


def init_scheduler(engine: "Engine") -> Optional[AsyncIOScheduler]:
    """
    进程内定时任务（单进程部署）：
      - 每 SWEEP_INTERVAL_SECONDS 扫描一次过期预留
      - 每小时记录一次临期库存
    ENABLE_SWEEP_SCHEDULER=false 时不启动（多进程部署改用 Celery beat）。
    """
    global _scheduler
    settings = engine.settings
    if not settings.ENABLE_SWEEP_SCHEDULER:
        return None
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _job_sweep,
        "interval",
        seconds=settings.SWEEP_INTERVAL_SECONDS,
        args=[engine],
        id="sweep_expired_reservations",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        _job_expiring_alerts,
        "interval",
        hours=1,
        args=[engine],
        id="expiring_stock_alerts",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("scheduler started sweep_interval=%ss", settings.SWEEP_INTERVAL_SECONDS)
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
