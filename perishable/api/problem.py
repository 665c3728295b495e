# perishable/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder

from perishable.domain.errors import EngineError


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = jsonable_encoder(self.context)
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    return Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        trace_id=trace_id,
    ).to_dict()


def problem_for_error(
    exc: EngineError,
    *,
    status_code: int,
    request_context: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    """领域错误 → Problem：请求上下文在前，错误自带的 context 覆盖同名键"""
    ctx: Dict[str, Any] = dict(request_context or {})
    ctx.update(exc.context)
    return make_problem(
        status_code=status_code,
        error_code=exc.code,
        message=exc.message,
        context=ctx,
        trace_id=trace_id,
    )
