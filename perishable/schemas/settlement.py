# perishable/schemas/settlement.py
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Union

from pydantic import BaseModel, Field, TypeAdapter

# 供应商状态 → 归一状态（大小写不敏感）
_STATUS_MAP: Dict[str, str] = {
    "paid": "paid",
    "concluded": "paid",
    "concluida": "paid",
    "failed": "failed",
    "removida_pelo_usuario_recebedor": "failed",
    "removida_pelo_psp": "failed",
    "expired": "expired",
    "expirada": "expired",
}


class _ConfirmationBase(BaseModel):
    charge_id: str
    provider_status: str = ""
    raw_payload: Dict[str, Any] = Field(default_factory=dict)


class PaidConfirmation(_ConfirmationBase):
    status: Literal["paid"] = "paid"


class FailedConfirmation(_ConfirmationBase):
    status: Literal["failed"] = "failed"


class ExpiredConfirmation(_ConfirmationBase):
    status: Literal["expired"] = "expired"


class UnknownConfirmation(_ConfirmationBase):
    """未知状态：原样保留 payload，向前兼容"""

    status: Literal["unknown"] = "unknown"


ConfirmationEvent = Annotated[
    Union[PaidConfirmation, FailedConfirmation, ExpiredConfirmation, UnknownConfirmation],
    Field(discriminator="status"),
]

_event_adapter: TypeAdapter = TypeAdapter(ConfirmationEvent)


class SettlementOutcome(str, Enum):
    COMMITTED = "committed"  # 付款成功 + 预留提交 + 已发配送请求
    COMPENSATED = "compensated"  # 付款成功但预留已过期 → 标记 failed + 退款信号
    MARKED_FAILED = "marked_failed"
    MARKED_EXPIRED = "marked_expired"
    DUPLICATE = "duplicate"  # 重复投递，幂等 no-op
    IGNORED = "ignored"  # 未知状态 / 与当前状态不相容


def normalize_status(raw: Any) -> str:
    return _STATUS_MAP.get(str(raw or "").strip().lower(), "unknown")


def build_confirmation(charge_id: str, provider_status: Any, raw: Mapping[str, Any]):
    return _event_adapter.validate_python(
        {
            "charge_id": str(charge_id),
            "status": normalize_status(provider_status),
            "provider_status": str(provider_status or ""),
            "raw_payload": dict(raw),
        }
    )


def parse_confirmations(body: Mapping[str, Any]) -> List[Any]:
    """
    把 webhook 原文解析为确认事件列表。

    支持两种形态：
      1) 通用：{"charge_id": "...", "status": "paid", ...}
      2) PIX： {"pix": [{"txid": "...", "status": "CONCLUIDA", ...}, ...]}
    """
    if isinstance(body.get("pix"), list):
        events = []
        for entry in body["pix"]:
            if not isinstance(entry, Mapping) or not entry.get("txid"):
                raise ValueError("pix entry without txid")
            # PIX 回调条目本身即代表到账；带 status 时以其为准
            events.append(build_confirmation(entry["txid"], entry.get("status", "CONCLUIDA"), body))
        if not events:
            raise ValueError("pix callback without entries")
        return events

    charge_id = body.get("charge_id") or body.get("txid")
    if not charge_id:
        raise ValueError("confirmation without charge_id")
    return [build_confirmation(charge_id, body.get("status"), body)]
