# perishable/worker.py
# Celery Worker：durable 队列（配送排期 / 产地通知）+ Beat 定时 TTL 扫描
from __future__ import annotations

import os
from typing import Any, Dict

from celery import Celery
from celery.result import EagerResult

from perishable.core.config import get_settings

_settings = get_settings()

celery = Celery(
    "perishable",
    broker=_settings.CELERY_BROKER_URL,
    backend=_settings.CELERY_RESULT_BACKEND,
    include=["perishable.tasks"],
)

# 基本配置
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.broker_transport_options = {"visibility_timeout": 3600}
celery.conf.task_serializer = "json"
celery.conf.accept_content = ["json"]

# === Beat 调度：多进程部署时由 beat 触发 TTL 扫描（替代进程内 APScheduler） ===
celery.conf.beat_schedule = {
    "sweep-expired-reservations": {
        "task": "perishable.tasks.sweep_expired_reservations",
        "schedule": float(_settings.SWEEP_INTERVAL_SECONDS),
    },
    "log-expiring-stock": {
        "task": "perishable.tasks.log_expiring_stock",
        "schedule": 3600.0,
    },
}

# 测试态下未在本 app 注册的任务（外部消费方）只记录不投递
sent_tasks: list = []

# === 测试/CI：任务在本进程直接执行，避免等待外部 worker ===
_TESTING = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("CELERY_ALWAYS_EAGER") == "1"
if _TESTING:
    celery.conf.task_always_eager = True
    celery.conf.task_eager_propagates = True
    celery.conf.task_store_eager_result = True

    # send_task 不受 always_eager 影响：本 app 的任务同步执行，外部任务（delivery.schedule）记录下来
    def _sync_send_task(name: str, args: Any | None = None, kwargs: Dict[str, Any] | None = None, **opts):
        task = celery.tasks.get(name)
        if task is None:
            sent_tasks.append({"name": name, "args": args, "kwargs": kwargs, "options": opts})
            return EagerResult(f"eager-{len(sent_tasks)}", None, "SUCCESS")
        return task.apply(args=args or (), kwargs=kwargs or {}, throw=True)

    celery.send_task = _sync_send_task  # monkey-patch
