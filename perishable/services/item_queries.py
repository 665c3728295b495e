# perishable/services/item_queries.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perishable.models.item import Item
from perishable.schemas.item import ExpiringItem
from perishable.schemas.validity import SubstituteItem
from perishable.services.query_cache import ANY_CATEGORY, QueryCache
from perishable.utils.time import utcnow


def _freshness_order():
    # 有保质期的按到期升序在前；非易腐品（NULL）兜底排在最后
    return (Item.expires_at.is_(None), Item.expires_at.asc(), Item.id.asc())


class ItemQueries:
    """
    只读查询（经 QueryCache 读穿）：

    - substitutes：同品类替代品候选
    - expiring_soon：临期告警

    缓存里只放商品的静态属性（品类 / 到期日 / 价格 / 排序）。
    可售量每次现读：库存也会被其他进程改写（Celery 扫描、别的 API 实例），
    那边的 invalidate 到不了本进程的 QueryCache。
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], cache: QueryCache) -> None:
        self._maker = session_maker
        self._cache = cache

    async def get_item(self, item_id: int) -> Optional[Item]:
        async with self._maker() as session:
            return await session.get(Item, int(item_id))

    async def live_stock(self, item_ids: Iterable[int]) -> Dict[int, Tuple[int, int]]:
        """item_id → (qty_available, min_safety_stock)，不经缓存"""
        ids = sorted({int(i) for i in item_ids})
        if not ids:
            return {}
        async with self._maker() as session:
            res = await session.execute(
                select(Item.id, Item.qty_available, Item.min_safety_stock).where(Item.id.in_(ids))
            )
            return {int(r[0]): (int(r[1]), int(r[2])) for r in res.all()}

    async def _load_candidates(self, category: str) -> List[SubstituteItem]:
        async with self._maker() as session:
            res = await session.execute(
                select(Item).where(Item.category == category).order_by(*_freshness_order())
            )
            return [
                SubstituteItem(
                    item_id=it.id,
                    sku=it.sku,
                    name=it.name,
                    expires_at=it.expires_at,
                    qty_available=it.qty_available,
                    unit_price=it.unit_price,
                )
                for it in res.scalars().all()
            ]

    async def substitutes(
        self,
        *,
        category: str,
        exclude_item_id: int,
        not_expiring_before: datetime,
        limit: int = 5,
    ) -> List[SubstituteItem]:
        """
        同品类、扣除安全库存后仍有货、且在 not_expiring_before 之后才过期（或不过期）的替代品。

        排序：到期时间升序（最先到期的可送达品优先出清），非易腐品排最后。
        候选集按品类缓存，时间过滤在内存里做，避免指纹随时间戳漂移。
        """
        candidates = await self._cache.get_or_load(
            "substitute_candidates",
            {"category": category},
            lambda: self._load_candidates(category),
            item_ids_of=lambda rows: [r.item_id for r in rows],
            categories=[category],
        )
        fresh = [
            c
            for c in candidates
            if c.item_id != int(exclude_item_id)
            and (c.expires_at is None or c.expires_at >= not_expiring_before)
        ]
        stock = await self.live_stock(c.item_id for c in fresh)

        out: List[SubstituteItem] = []
        for c in fresh:
            qty, safety = stock.get(c.item_id, (0, 0))
            if qty - safety > 0:
                out.append(c.model_copy(update={"qty_available": qty}))
        return out[: max(0, int(limit))]

    async def _load_expiring(self, *, since: datetime, cutoff: datetime) -> List[ExpiringItem]:
        async with self._maker() as session:
            res = await session.execute(
                select(Item)
                .where(
                    Item.expires_at.is_not(None),
                    Item.expires_at > since,
                    Item.expires_at <= cutoff,
                )
                .order_by(*_freshness_order())
            )
            return [
                ExpiringItem(
                    item_id=it.id,
                    sku=it.sku,
                    name=it.name,
                    category=it.category,
                    origin=it.origin,
                    qty_available=it.qty_available,
                    expires_at=it.expires_at,
                )
                for it in res.scalars().all()
            ]

    async def expiring_soon(
        self, *, within_days: int, now: Optional[datetime] = None
    ) -> List[ExpiringItem]:
        """有库存、未过期、且 within_days 天内到期的商品（按到期升序）"""
        now = now or utcnow()
        horizon = timedelta(days=int(within_days))
        # 只有指纹按分钟取整；缓存的窗口向后多留一分钟，精确的时间过滤在内存里按真实 now 做
        bucket = now.replace(second=0, microsecond=0)
        rows = await self._cache.get_or_load(
            "expiring_soon",
            {"within_days": int(within_days), "bucket": bucket.isoformat()},
            lambda: self._load_expiring(since=bucket, cutoff=bucket + horizon + timedelta(minutes=1)),
            item_ids_of=lambda rs: [r.item_id for r in rs],
            categories=[ANY_CATEGORY],
        )
        due = [r for r in rows if now < r.expires_at <= now + horizon]
        stock = await self.live_stock(r.item_id for r in due)

        out: List[ExpiringItem] = []
        for r in due:
            qty, _ = stock.get(r.item_id, (0, 0))
            if qty > 0:
                out.append(r.model_copy(update={"qty_available": qty}))
        return out
