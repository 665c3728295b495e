# perishable/db/base.py
from __future__ import annotations

import importlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, configure_mappers
from sqlalchemy.types import TypeDecorator

log = logging.getLogger("perishable.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


class UTCDateTime(TypeDecorator):
    """
    统一 UTC 的时间列：

    - 写入：naive 视为 UTC；aware 统一转换为 UTC
    - 读出：sqlite 返回 naive，这里补上 tzinfo=UTC，保证与 aware 的 now 可比较
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_INITIALIZED: bool = False

MODEL_MODULES = [
    "perishable.models.item",
    "perishable.models.reservation",
    "perishable.models.stock_movement",
    "perishable.models.payment_charge",
]


def init_models(*, force: bool = False) -> None:
    """
    集中导入模型 + 固化关系映射（Alembic / create_all 之前调用）。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        log.debug("init_models() called again; already initialized, skipping.")
        return

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    configure_mappers()
    _INITIALIZED = True
    log.debug("models initialized: %s", ", ".join(sorted(Base.metadata.tables)))
