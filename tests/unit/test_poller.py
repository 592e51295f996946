import httpx
import pytest

from core.cache import ChartCache
from core.ohlc_fetcher import TwelveDataFetcher
from core.poller import ChartPoller


def _handler(request):
    symbol = request.url.params["symbol"]
    if symbol == "DJI":
        return httpx.Response(200, json={"status": "error", "code": 429, "message": "limit"})
    values = [{"datetime": "2024-05-01 00:00:00", "open": "1", "high": "1", "low": "1", "close": "1"}]
    return httpx.Response(200, json={"status": "ok", "values": values})


@pytest.mark.asyncio
async def test_poll_once_refreshes_cache_and_reports_failures(settings):
    cache = ChartCache(ttl_ms=60_000)
    fetcher = TwelveDataFetcher(settings, cache=cache, transport=httpx.MockTransport(_handler))

    failed = await ChartPoller(settings, fetcher).poll_once()

    assert failed == ["US30"]
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_poller_disabled_without_key(settings):
    settings.twelvedata_api_key = ""
    poller = ChartPoller(settings, TwelveDataFetcher(settings))
    assert await poller.poll_once() == []
    assert poller.start() is None
