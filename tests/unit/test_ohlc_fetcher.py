import json

import httpx
import pytest

from core.cache import ChartCache, get_candles, normalize_hours
from core.errors import ProviderError
from core.ohlc_fetcher import TwelveDataFetcher, interval_minutes


def _values(n):
    # newest first, the way Twelve Data answers with order=desc
    return [
        {
            "datetime": f"2024-05-01 {h:02d}:00:00",
            "open": str(100 + h),
            "high": str(101 + h),
            "low": str(99 + h),
            "close": str(100.5 + h),
            "volume": "10",
        }
        for h in reversed(range(n))
    ]


def _fetcher(settings, handler, cache=None):
    return TwelveDataFetcher(settings, cache=cache, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "interval,expected",
    [("1min", 1), ("15min", 15), ("1h", 60), ("4h", 240), ("1day", 1440), ("1week", 10080),
     ("1month", 43200), ("0h", 60), ("bogus", 60), ("", 60), (None, 60)],
)
def test_interval_minutes(interval, expected):
    assert interval_minutes(interval) == expected


def test_build_time_series_url(settings):
    settings.twelvedata_timezone = "UTC"
    url = httpx.URL(TwelveDataFetcher(settings).build_time_series_url("XAU/USD", "1h", 24))
    assert url.path == "/time_series"
    assert url.params["symbol"] == "XAU/USD"
    assert url.params["outputsize"] == "24"
    assert url.params["apikey"] == "test-key-1234"
    assert url.params["format"] == "JSON"
    assert url.params["timezone"] == "UTC"
    assert url.params["order"] == "desc"


@pytest.mark.asyncio
async def test_request_candles_sorts_and_truncates(settings):
    seen = {}

    def handler(request):
        seen["outputsize"] = request.url.params["outputsize"]
        body = {"status": "ok", "meta": {"symbol": "XAU/USD"}, "values": _values(8)}
        return httpx.Response(200, json=body)

    cache = ChartCache(ttl_ms=60_000)
    batch = await _fetcher(settings, handler, cache).request_candles("XAUUSD", 5)

    assert seen["outputsize"] == "5"
    assert batch.timestamps == [f"2024-05-01 {h:02d}:00:00" for h in range(3, 8)]
    assert batch.frame["close"].tolist() == [103.5, 104.5, 105.5, 106.5, 107.5]
    assert batch.lookback_hours == 5
    assert batch.last_updated == "2024-05-01 07:00:00"
    assert cache.lookup("XAUUSD", 5) is batch

    data = batch.to_dict()
    assert data["providerSymbol"] == "XAU/USD"
    assert data["source"] == "twelvedata"
    assert data["requestedOutputSize"] == 5
    assert data["meta"] == {"symbol": "XAU/USD"}


@pytest.mark.asyncio
async def test_request_candles_bad_numbers_become_null(settings):
    values = _values(2)
    values[0]["volume"] = None
    values[0]["close"] = "n/a"

    def handler(request):
        return httpx.Response(200, json={"status": "ok", "values": values})

    data = (await _fetcher(settings, handler).request_candles("XAUUSD", 24)).to_dict()
    assert data["close"][-1] is None
    assert data["volume"][-1] is None
    assert data["close"][0] == 100.5


@pytest.mark.asyncio
async def test_disabled_and_unknown_pair(settings):
    settings.twelvedata_api_key = ""
    with pytest.raises(ProviderError) as exc:
        await TwelveDataFetcher(settings).request_candles("XAUUSD", 24)
    assert exc.value.http_status == 503

    settings.twelvedata_api_key = "k"
    with pytest.raises(ProviderError) as exc:
        await TwelveDataFetcher(settings).request_candles("BTCUSD", 24)
    assert exc.value.http_status == 400
    assert "Unsupported symbol" in exc.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,status,fragment",
    [
        (httpx.Response(429, text="slow down"), 429, "responded with 429: slow down"),
        (httpx.Response(200, text="{not json"), 502, "Unable to parse"),
        (httpx.Response(200, json={"status": "error", "code": 401, "message": "bad key"}), 401, "bad key"),
        (httpx.Response(200, json={"status": "error"}), 502, "error response"),
        (httpx.Response(200, json={"code": 404, "message": "symbol missing"}), 404, "symbol missing"),
        (httpx.Response(200, json={"status": "ok", "values": []}), 404, "no candle data"),
    ],
)
async def test_provider_errors(settings, response, status, fragment):
    with pytest.raises(ProviderError) as exc:
        await _fetcher(settings, lambda request: response).request_candles("USDJPY", 24)
    assert exc.value.http_status == status
    assert fragment in exc.value.message


def test_normalize_hours():
    assert normalize_hours(None) == 24
    assert normalize_hours(0) == 24
    assert normalize_hours(500) == 240
    assert normalize_hours(12) == 12


@pytest.mark.asyncio
async def test_get_candles_serves_fresh_cache(settings):
    calls = []

    def handler(request):
        calls.append(request.url.params["outputsize"])
        return httpx.Response(200, content=json.dumps({"status": "ok", "values": _values(48)}))

    now = [1000.0]
    cache = ChartCache(ttl_ms=60_000, clock=lambda: now[0])
    fetcher = _fetcher(settings, handler, cache)

    first = await get_candles(fetcher, cache, "XAUUSD", 24)
    assert await get_candles(fetcher, cache, "XAUUSD", 12) is first
    assert len(calls) == 1

    # longer lookback than cached forces a refetch
    await get_candles(fetcher, cache, "XAUUSD", 48)
    assert len(calls) == 2

    # stale entries are refetched
    now[0] += 61
    await get_candles(fetcher, cache, "XAUUSD", 12)
    assert len(calls) == 3
