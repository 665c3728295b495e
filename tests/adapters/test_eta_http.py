from datetime import datetime, timezone

import httpx
import pytest

from perishable.adapters.eta_http import HttpEtaProvider
from perishable.domain.errors import ProviderError


def _provider(handler) -> HttpEtaProvider:
    client = httpx.AsyncClient(base_url="http://eta.test/", transport=httpx.MockTransport(handler))
    return HttpEtaProvider("http://eta.test/", client=client)


@pytest.mark.asyncio
async def test_estimate_parses_iso_timestamp():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"estimated_delivery": "2025-01-08T15:30:00Z"})

    eta = _provider(handler)
    got = await eta.estimate("01310-100")
    await eta.aclose()

    assert got == datetime(2025, 1, 8, 15, 30, tzinfo=timezone.utc)
    assert seen["url"] == "http://eta.test/eta?destination=01310-100"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="down"),
        httpx.Response(200, json={"other": 1}),
        httpx.Response(200, json={"estimated_delivery": "tomorrow"}),
        httpx.Response(200, text="<html>"),
    ],
)
async def test_bad_responses_become_provider_error(response):
    eta = _provider(lambda request: response)
    with pytest.raises(ProviderError) as ei:
        await eta.estimate("01310-100")
    await eta.aclose()
    assert ei.value.provider == "eta"


@pytest.mark.asyncio
async def test_network_error_becomes_provider_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    eta = _provider(handler)
    with pytest.raises(ProviderError):
        await eta.estimate("01310-100")
    await eta.aclose()
