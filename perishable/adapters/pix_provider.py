# perishable/adapters/pix_provider.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from perishable.domain.errors import ProviderError
from perishable.ports import ProviderCharge

logger = logging.getLogger("perishable.adapters.pix")

# 付款单附言：内部键 → PIX infoAdicionais.nome
_INFO_LABELS = {
    "product": "Produto",
    "expiry": "Validade",
    "delivery": "Entrega",
    "origin": "Granja",
}


def _money(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class PixPaymentProvider:
    """
    PIX 动态收款（Gerencianet v2 接口）。

    - create_charge：POST v2/cob/{txid}，calendario.expiracao = 剩余付款窗口秒数
    - request_refund：GET v2/cob/{txid} 取 endToEndId，再 PUT v2/pix/{e2eid}/devolucao/{id}
    所有网络 / HTTP 错误统一转换为 ProviderError("payment")。
    """

    def __init__(
        self,
        base_url: str,
        *,
        access_token: Optional[str],
        pix_key: Optional[str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)
        self._pix_key = pix_key

    async def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                "payment",
                f"pix {method} {url} returned {e.response.status_code}",
                context={"http_status": e.response.status_code, "body": e.response.text[:500]},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError("payment", f"pix {method} {url} failed: {e}") from e

    async def create_charge(
        self,
        *,
        txid: str,
        amount: Decimal,
        expires_in_seconds: int,
        metadata: Dict[str, str],
    ) -> ProviderCharge:
        if not self._pix_key:
            raise ProviderError("payment", "PAYMENT_PIX_KEY not configured")

        payload = {
            "calendario": {"expiracao": int(expires_in_seconds)},
            "valor": {"original": _money(amount)},
            "chave": self._pix_key,
            "infoAdicionais": [
                {"nome": _INFO_LABELS.get(k, k), "valor": str(v)} for k, v in metadata.items()
            ],
        }
        data = await self._call("POST", f"v2/cob/{txid}", json=payload)

        qr = data.get("qrCode") or data.get("pixCopiaECola")
        logger.info("pix charge created txid=%s amount=%s expiracao=%s", txid, _money(amount), expires_in_seconds)
        return ProviderCharge(charge_id=str(data.get("txid") or txid), qr_payload=qr, raw=data)

    async def request_refund(self, *, charge_id: str, amount: Decimal, reason: str) -> None:
        cob = await self._call("GET", f"v2/cob/{charge_id}")
        received = cob.get("pix") or []
        if not received or not received[0].get("endToEndId"):
            raise ProviderError(
                "payment",
                f"no settled pix found for txid={charge_id}",
                context={"charge_id": charge_id},
            )
        e2eid = received[0]["endToEndId"]
        await self._call(
            "PUT",
            f"v2/pix/{e2eid}/devolucao/{charge_id}",
            json={"valor": _money(amount), "descricao": reason[:140]},
        )
        logger.info("pix refund requested txid=%s e2eid=%s amount=%s", charge_id, e2eid, _money(amount))

    async def aclose(self) -> None:
        await self._client.aclose()
