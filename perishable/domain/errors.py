# perishable/domain/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """
    引擎错误基类：code 为稳定的原因码，context 为结构化上下文，
    调用方无需重新查库即可决定“重试 / 换货 / 放弃”。
    """

    code: str = "engine_error"

    def __init__(self, message: str = "", *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class InsufficientStock(EngineError):
    """Hold 时 qty > items.qty_available"""

    code = "insufficient_stock"


class ValidityInsufficient(EngineError):
    """商品会在送达前过期"""

    code = "validity_insufficient"


class AlreadyTerminal(EngineError):
    """
    预留已处于终态（committed / expired / cancelled）。

    属于“竞争失败”的控制信号，不是异常情况：
      - Sweeper 视为正常结果
      - SettlementHandler 转入补偿（退款）分支
    永远不直接返回给终端调用方。
    """

    code = "already_terminal"

    def __init__(self, reservation_id: str, status: str) -> None:
        super().__init__(
            f"reservation {reservation_id} already in status={status}",
            context={"reservation_id": reservation_id, "status": status},
        )
        self.reservation_id = reservation_id
        self.status = status


class ProviderError(EngineError):
    """外部供应商（ETA / 支付）网络失败、超时或返回异常"""

    code = "provider_error"

    def __init__(self, provider: str, message: str, *, context: Optional[Dict[str, Any]] = None):
        ctx = {"provider": provider}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.provider = provider


class NotFound(EngineError):
    """未知的 item / reservation / charge"""

    code = "not_found"

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} not found: {key}", context={"kind": kind, "key": key})
        self.kind = kind
        self.key = key
