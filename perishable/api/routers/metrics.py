# perishable/api/routers/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import REGISTRY, CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程：直接导出默认 REGISTRY；
    多进程（设置了 PROMETHEUS_MULTIPROC_DIR）：MultiProcessCollector 合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
