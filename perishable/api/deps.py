# perishable/api/deps.py
from __future__ import annotations

from fastapi import Request

from perishable.engine import Engine


def get_engine(request: Request) -> Engine:
    """引擎容器挂在 app.state.engine（lifespan 中装配，测试可直接替换）"""
    return request.app.state.engine
