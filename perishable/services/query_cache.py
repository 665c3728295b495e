# perishable/services/query_cache.py
from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Mapping, Optional

logger = logging.getLogger("perishable.cache")

ANY_CATEGORY = "*"


def query_fingerprint(name: str, params: Mapping[str, Any]) -> str:
    """查询指纹：name + 规范化参数的 sha1"""
    body = json.dumps(dict(params), sort_keys=True, default=str, ensure_ascii=False)
    return f"{name}:{hashlib.sha1(body.encode('utf-8')).hexdigest()}"


@dataclass
class _Entry:
    value: Any
    item_ids: FrozenSet[int]
    categories: FrozenSet[str]
    expires_at: float


class QueryCache:
    """
    显式读穿缓存：

    - key = 查询指纹；每条记录带 TTL
    - 每条记录登记结果中的 item_ids，以及结果集所依赖的品类（categories）
      * 品类内任一 item 的库存变化都可能让新 item 进入结果集，所以按品类也要作废
      * 跨品类查询登记 ANY_CATEGORY，任何库存变化都作废
    - Ledger 在 hold / release / commit / adjust 提交后调用 invalidate()
    - 实例由引擎容器持有，不做进程级全局单例
    """

    def __init__(self, ttl_seconds: float = 300.0, *, clock: Callable[[], float] = time.monotonic):
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self.hits = 0
        self.misses = 0

    async def get_or_load(
        self,
        name: str,
        params: Mapping[str, Any],
        loader: Callable[[], Awaitable[Any]],
        *,
        item_ids_of: Optional[Callable[[Any], Iterable[int]]] = None,
        categories: Iterable[str] = (),
    ) -> Any:
        key = query_fingerprint(name, params)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            self.hits += 1
            return entry.value

        self.misses += 1
        value = await loader()
        if self._ttl <= 0:
            return value

        self._entries[key] = _Entry(
            value=value,
            item_ids=frozenset(int(i) for i in (item_ids_of(value) if item_ids_of else ())),
            categories=frozenset(categories),
            expires_at=now + self._ttl,
        )
        return value

    def invalidate(self, *, item_ids: Iterable[int] = (), categories: Iterable[str] = ()) -> int:
        ids = {int(i) for i in item_ids}
        cats = set(categories)
        if not ids and not cats:
            return 0

        dropped = [
            key
            for key, entry in self._entries.items()
            if (entry.item_ids & ids)
            or (entry.categories & cats)
            or ANY_CATEGORY in entry.categories
        ]
        for key in dropped:
            self._entries.pop(key, None)
        if dropped:
            logger.debug(
                "cache invalidated %d entries (items=%s categories=%s)",
                len(dropped),
                sorted(ids),
                sorted(cats),
            )
        return len(dropped)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
