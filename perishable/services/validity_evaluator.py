# perishable/services/validity_evaluator.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from perishable.domain.errors import ProviderError
from perishable.models.item import Item
from perishable.obs.metrics import provider_errors_total, provider_latency
from perishable.ports import EtaProvider, RestockPlanner
from perishable.schemas.validity import ValidityReason, ValidityResult
from perishable.services.item_queries import ItemQueries
from perishable.utils.time import ensure_utc

logger = logging.getLogger("perishable.validity")


@dataclass(frozen=True)
class DeliveryPolicy:
    """静态策略数据（配置读取，不做计算）"""

    window_label: str = "4 hours"
    care_recommendation: str = "Keep refrigerated after receipt"
    max_alternatives: int = 5


class ValidityEvaluator:
    """
    送达可行性评估（只读决策，无副作用，可无限并发调用）。

    判定顺序：
      1) ETA 供应商失败            → eta_unavailable（调用方决定是否重试）
      2) estimated > expires_at    → validity_insufficient + 同品类替代品
      3) qty > 可售量 - 安全库存    → insufficient_safety_stock + 下一个可送达日期
      4) 其余                      → deliverable
    """

    def __init__(
        self,
        *,
        eta: EtaProvider,
        queries: ItemQueries,
        restock: RestockPlanner,
        policy: Optional[DeliveryPolicy] = None,
    ) -> None:
        self._eta = eta
        self._queries = queries
        self._restock = restock
        self._policy = policy or DeliveryPolicy()

    async def evaluate(self, item: Item, qty: int, destination: str) -> ValidityResult:
        started = time.perf_counter()
        try:
            estimated = await self._eta.estimate(destination)
        except ProviderError as e:
            provider_errors_total.labels("eta").inc()
            logger.warning("eta unavailable item=%s dest=%s: %s", item.id, destination, e)
            return ValidityResult(deliverable=False, reason=ValidityReason.ETA_UNAVAILABLE)
        finally:
            provider_latency.labels("eta").observe(time.perf_counter() - started)
        estimated = ensure_utc(estimated)

        if item.expires_at is not None and estimated > item.expires_at:
            alternatives = await self._queries.substitutes(
                category=item.category,
                exclude_item_id=item.id,
                not_expiring_before=estimated,
                limit=self._policy.max_alternatives,
            )
            return ValidityResult(
                deliverable=False,
                reason=ValidityReason.VALIDITY_INSUFFICIENT,
                estimated_delivery=estimated,
                expires_at=item.expires_at,
                alternatives=alternatives,
            )

        if int(qty) > item.sellable_qty:
            try:
                next_date = await self._restock.next_feasible_delivery(item, int(qty))
            except ProviderError as e:
                logger.warning("restock planner unavailable item=%s: %s", item.id, e)
                next_date = None
            return ValidityResult(
                deliverable=False,
                reason=ValidityReason.INSUFFICIENT_SAFETY_STOCK,
                estimated_delivery=estimated,
                qty_available=int(item.qty_available),
                qty_requested=int(qty),
                next_delivery_date=next_date,
            )

        return ValidityResult(
            deliverable=True,
            estimated_delivery=estimated,
            delivery_window=self._policy.window_label,
            recommendation=self._policy.care_recommendation,
        )
