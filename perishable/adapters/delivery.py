# perishable/adapters/delivery.py
# 配送 / 运费 / 补货 / 产地与买家通知的默认实现（生产可替换为真实服务）
from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from celery import Celery

from perishable.domain.errors import ProviderError
from perishable.models.item import Item
from perishable.schemas.delivery import DeliveryRequest
from perishable.utils.time import Clock, utcnow

logger = logging.getLogger("perishable.adapters.delivery")

DELIVERY_TASK = "delivery.schedule"
ORIGIN_TASK = "origin.notify"
BUYER_TASK = "buyer.notify"


def _send(app: Celery, provider: str, name: str, kwargs: Dict[str, Any], queue: str) -> None:
    """send_task 同步连 broker；连不上统一转成 ProviderError，由调用方决定重试还是记录"""
    try:
        app.send_task(name, kwargs=kwargs, queue=queue)
    except Exception as e:
        raise ProviderError(provider, f"cannot queue {name}: {e}", context={"task": name}) from e


async def _send_async(app: Celery, provider: str, name: str, kwargs: Dict[str, Any], queue: str) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, functools.partial(_send, app, provider, name, kwargs, queue))


class CeleryDeliveryScheduler:
    """
    把 DeliveryRequest 投递到 durable 队列（fire-and-forget）。
    消费方（排期服务）注册 delivery.schedule 任务。
    """

    def __init__(self, app: Celery, *, queue: str = "delivery") -> None:
        self._app = app
        self._queue = queue

    def schedule(self, request: DeliveryRequest) -> None:
        _send(self._app, "delivery", DELIVERY_TASK, {"request": request.model_dump(mode="json")}, self._queue)
        logger.info("delivery task queued rsv=%s priority=%s", request.reservation_id, request.priority.value)


class CeleryOriginNotifier:
    """结算成功后通知产地备货（同样走队列，不阻塞结算）"""

    def __init__(self, app: Celery, *, queue: str = "origin") -> None:
        self._app = app
        self._queue = queue

    async def notify(self, *, item_id: int, qty: int, reservation_id: str) -> None:
        await _send_async(
            self._app,
            "origin",
            ORIGIN_TASK,
            {"item_id": int(item_id), "qty": int(qty), "reservation_id": reservation_id},
            self._queue,
        )


class CeleryBuyerNotifier:
    """买家确认（WhatsApp / 短信由 buyer.notify 的消费方发送）"""

    def __init__(self, app: Celery, *, queue: str = "notifications") -> None:
        self._app = app
        self._queue = queue

    async def notify(
        self,
        *,
        buyer_id: str,
        reservation_id: str,
        destination: str,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        await _send_async(
            self._app,
            "buyer",
            BUYER_TASK,
            {
                "buyer_id": buyer_id,
                "reservation_id": reservation_id,
                "destination": destination,
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
            },
            self._queue,
        )


class FlatFeeQuoter:
    """按目的地前缀（CEP 前缀）查表，未命中用默认运费"""

    def __init__(self, default_fee: Decimal, by_prefix: Optional[Mapping[str, Decimal]] = None) -> None:
        self._default = Decimal(default_fee)
        self._by_prefix = {str(k): Decimal(v) for k, v in (by_prefix or {}).items()}

    async def quote(self, destination: str) -> Decimal:
        # 最长前缀优先
        for prefix in sorted(self._by_prefix, key=len, reverse=True):
            if destination.startswith(prefix):
                return self._by_prefix[prefix]
        return self._default


class CadenceRestockPlanner:
    """
    固定补货节奏：下一批在 now + cadence 送达。
    未配置节奏时返回 None（未知）。
    """

    def __init__(self, cadence: Optional[timedelta], *, clock: Clock = utcnow) -> None:
        self._cadence = cadence
        self._clock = clock

    async def next_feasible_delivery(self, item: Item, qty: int) -> Optional[datetime]:
        if self._cadence is None:
            return None
        return self._clock() + self._cadence
