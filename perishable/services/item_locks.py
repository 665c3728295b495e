# perishable/services/item_locks.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ItemLockRegistry:
    """
    进程内按 item 粒度的互斥锁（对应 PG 上 pg_advisory_xact_lock 的作用域）。

    约定：
      - 加锁顺序固定为“先 item 锁，再开事务”，不允许反过来
      - 持锁期间禁止任何外部网络调用（ETA / 支付）
      - 同一 item 的 hold / release / commit / adjust 全部串行
    """

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, item_id: int) -> asyncio.Lock:
        lock = self._locks.get(item_id)
        if lock is None:
            lock = self._locks.setdefault(item_id, asyncio.Lock())
        return lock

    @asynccontextmanager
    async def hold(self, item_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(int(item_id))
        async with lock:
            yield

    def locked(self, item_id: int) -> bool:
        lock = self._locks.get(int(item_id))
        return bool(lock and lock.locked())
