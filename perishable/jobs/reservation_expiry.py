"""
预留 TTL 扫描（独立入口）

目标：
  - 只处理 reservations(status='pending', payment_deadline <= now)
  - 回收逻辑与幂等由 sweep_expired_reservations / ReservationLedger 保证

用法：
  - 本地/生产均可使用：
        python -m perishable.jobs.reservation_expiry
  - 也可以由 cron / k8s CronJob 定期调用。
"""

from __future__ import annotations

import asyncio
import logging

from perishable.core.config import get_settings
from perishable.core.logging import setup_logging
from perishable.db.session import build_engine, build_session_maker
from perishable.services.expiry_sweeper import sweep_expired_reservations
from perishable.services.reservation_ledger import ReservationLedger

logger = logging.getLogger("perishable.jobs.reservation_expiry")


async def main() -> None:
    """
    行为：
      - 连接与应用相同的 DATABASE_URL；
      - 扫描并回收过期预留，打印处理数量。
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    engine = build_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)
    try:
        maker = build_session_maker(engine)
        report = await sweep_expired_reservations(
            maker,
            ReservationLedger(maker),
            batch_size=settings.SWEEP_BATCH_SIZE,
        )
        logger.info(
            "[ReservationTTL] scanned=%d expired=%d lost_race=%d (batch_size=%d)",
            report.scanned,
            report.expired,
            report.lost_race,
            settings.SWEEP_BATCH_SIZE,
        )
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
