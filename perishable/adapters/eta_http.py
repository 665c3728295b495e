# perishable/adapters/eta_http.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import httpx

from perishable.domain.errors import ProviderError
from perishable.utils.time import ensure_utc

logger = logging.getLogger("perishable.adapters.eta")


class HttpEtaProvider:
    """
    物流 ETA（HTTP）：GET {base}/eta?destination=<CEP>

    期望返回：{"estimated_delivery": "2025-01-02T15:00:00Z"}
    网络失败 / 超时 / 非 2xx / 字段缺失 一律抛 ProviderError("eta")。
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def estimate(self, destination: str) -> datetime:
        try:
            resp = await self._client.get("eta", params={"destination": destination})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                "eta",
                f"eta provider returned {e.response.status_code}",
                context={"destination": destination, "http_status": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError("eta", f"eta provider unreachable: {e}", context={"destination": destination}) from e

        raw = data.get("estimated_delivery") if isinstance(data, dict) else None
        if not raw:
            raise ProviderError("eta", "eta response without estimated_delivery", context={"destination": destination})
        try:
            estimated = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError as e:
            raise ProviderError("eta", f"bad estimated_delivery: {raw!r}", context={"destination": destination}) from e

        logger.debug("eta dest=%s estimated=%s", destination, estimated.isoformat())
        return ensure_utc(estimated)

    async def aclose(self) -> None:
        await self._client.aclose()
