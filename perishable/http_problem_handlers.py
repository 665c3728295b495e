# perishable/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from perishable.api.problem import make_problem, problem_for_error
from perishable.domain.errors import (
    AlreadyTerminal,
    EngineError,
    InsufficientStock,
    NotFound,
    ProviderError,
    ValidityInsufficient,
)

logger = logging.getLogger("perishable.http")

# 领域错误 → HTTP 状态码（未列出的 EngineError 一律 400）
_STATUS_BY_ERROR = {
    NotFound: 404,
    AlreadyTerminal: 409,
    InsufficientStock: 409,
    ValidityInsufficient: 409,
    ProviderError: 502,
}


def _new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def status_for(exc: EngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 400


def _req_ctx(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def _engine_exc(req: Request, exc: EngineError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("provider failure on %s %s: %s", req.method, req.url.path, exc.message)
        content = problem_for_error(
            exc,
            status_code=status_code,
            request_context=_req_ctx(req),
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[Dict[str, Any]] = []
        for i, e in enumerate(exc.errors()):
            if not isinstance(e, dict):
                continue
            details.append(
                {
                    "path": ".".join(str(p) for p in e.get("loc", ())) or f"validation[{i}]",
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )
        ctx = _req_ctx(req)
        ctx["errors"] = details
        content = make_problem(
            status_code=422,
            error_code="request_validation_error",
            message="invalid request",
            context=ctx,
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        d = exc.detail
        content = make_problem(
            status_code=int(exc.status_code),
            error_code="http_error",
            message=str(d) if d is not None else "request rejected",
            context=_req_ctx(req),
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=int(exc.status_code), content=content)

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _new_trace_id()
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="internal error, retry later",
            context=_req_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)
