# perishable/utils/time.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

UTC = timezone.utc

# 可注入时钟：测试里用固定时间替换
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        # 假定传入是 UTC naive
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
