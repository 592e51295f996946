import httpx
import pytest
from fastapi.testclient import TestClient

from app.api import create_app
from core.errors import ProviderError
from core.notifier import TEST_PING_SUFFIX
from core.ohlc_fetcher import TwelveDataFetcher
from core.rules import analyze_bars

AUTH = ("admin", "admin")

# row 4 closes above a flat trailing SMA with its low clear of it
GREEN_CLOSES = [10, 10, 10, 10, 20, 21]
FLAT_CLOSES = [10, 10, 10, 10, 10, 10]


class FakeChartClient:
    def __init__(self, make_bars, closes=GREEN_CLOSES):
        self.make_bars = make_bars
        self.closes = closes
        self.requests = []
        self.error = None

    async def fetch_analysis(self, req):
        self.requests.append(req)
        if self.error:
            raise self.error
        return analyze_bars(
            self.make_bars(self.closes), sma_period=req.sma_period, recent_count=req.recent_count,
            symbol=req.symbol, timeframe=req.timeframe, normalized_timeframe="60",
            meta={"usingGuest": req.guest, "fetchRange": req.range},
        )


class FakeNotifier:
    def __init__(self, configured=True):
        self.configured = configured
        self.sent = []

    async def send(self, text):
        self.sent.append(text)
        return "Message queued. Message sent"


def _twelvedata_handler(request):
    values = [
        {"datetime": f"2024-05-01 {h:02d}:00:00", "open": "1", "high": "2", "low": "0.5",
         "close": "1.5", "volume": "0"}
        for h in reversed(range(24))
    ]
    return httpx.Response(200, json={"status": "ok", "meta": {"symbol": "XAU/USD"}, "values": values})


@pytest.fixture()
def parts(settings, make_bars):
    settings.tv_sma_period = 3
    return {
        "settings": settings,
        "fetcher": TwelveDataFetcher(settings, transport=httpx.MockTransport(_twelvedata_handler)),
        "chart_client": FakeChartClient(make_bars),
        "notifier": FakeNotifier(),
    }


@pytest.fixture()
def client(parts):
    app = create_app(start_background=False, **parts)
    with TestClient(app) as c:
        yield c


def test_health_is_public(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.json()["timestamp"].endswith("Z")


@pytest.mark.parametrize("auth", [None, ("admin", "wrong"), ("root", "admin")])
def test_api_requires_basic_auth(client, auth):
    res = client.get("/api/charts", auth=auth)
    assert res.status_code == 401
    assert res.headers["www-authenticate"] == 'Basic realm="Signal Alert"'
    assert res.json() == {"success": False, "error": "Access denied"}


def test_login(client):
    res = client.post("/api/login", auth=AUTH)
    assert res.status_code == 200
    assert res.json() == {"success": True, "user": {"username": "admin"}}


def test_charts_returns_cached_batch(client, parts):
    res = client.get("/api/charts", params={"pair": "xauusd", "hours": "12"}, auth=AUTH)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["pair"] == "XAUUSD"
    assert data["providerSymbol"] == "XAU/USD"
    assert len(data["close"]) == 12

    again = client.get("/api/charts", params={"pair": "XAUUSD", "hours": "6"}, auth=AUTH)
    assert again.json()["data"]["close"] == data["close"]
    assert len(parts["fetcher"].cache) == 1


def test_charts_rejects_unknown_pair(client):
    res = client.get("/api/charts", params={"pair": "BTCUSD"}, auth=AUTH)
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Invalid pair"}


def test_charts_disabled_without_api_key(parts):
    parts["settings"].twelvedata_api_key = ""
    app = create_app(start_background=False, **parts)
    with TestClient(app) as c:
        res = c.get("/api/charts", auth=AUTH)
    assert res.status_code == 503
    assert res.json()["success"] is False


def test_tradingview_candles_parses_query(client, parts):
    res = client.get(
        "/api/tradingview/candles",
        params={"symbol": "FX:USDJPY", "timeframe": "4h", "range": "200bars", "sma": "3.0",
                "limit": "4", "guest": "1"},
        auth=AUTH,
    )
    assert res.status_code == 200
    req = parts["chart_client"].requests[-1]
    assert (req.symbol, req.timeframe, req.range, req.sma_period, req.recent_count) == (
        "FX:USDJPY", "4h", 200, 3, 4,
    )
    assert req.guest is True
    assert req.allow_guest_fallback is True

    data = res.json()["data"]
    assert data["recentCount"] == 4
    assert data["totalBarsFetched"] == 6
    assert [c["number"] for c in data["candles"]] == [3, 4, 5, 6]
    assert data["meta"] == {"usingGuest": True, "fetchRange": 200}


def test_tradingview_matches(client):
    res = client.get("/api/tradingview/matches", params={"noFallback": "true"}, auth=AUTH)
    data = res.json()["data"]
    assert [c["index"] for c in data["greenAbove"]] == [4, 5]
    assert data["redBelow"] == []


def test_tradingview_signal(client):
    data = client.get("/api/tradingview/signal", auth=AUTH).json()["data"]
    assert data["triggered"] is True
    assert data["previousCompleted"]["candle"]["index"] == 4
    assert data["formingCandle"]["forming"] is True


def test_tradingview_provider_error_maps_status(client, parts):
    parts["chart_client"].error = ProviderError("Timed out waiting for chart data", 504)
    res = client.get("/api/tradingview/signal", auth=AUTH)
    assert res.status_code == 504
    assert res.json() == {"success": False, "error": "Timed out waiting for chart data"}


def test_whatsapp_dry_run_does_not_send(client, parts):
    res = client.post("/api/tradingview/whatsapp/test", json={"dryRun": True}, auth=AUTH)
    data = res.json()["data"]
    assert data["sent"] is False
    assert data["verified"] is True
    assert data["message"].startswith("I just spotted a candle")
    assert parts["notifier"].sent == []


def test_whatsapp_send_appends_ping(client, parts):
    res = client.post(
        "/api/tradingview/whatsapp/test", params={"symbol": "OANDA:XAUUSD"}, auth=AUTH
    )
    data = res.json()["data"]
    assert data["sent"] is True
    assert data["message"].endswith(TEST_PING_SUFFIX)
    assert data["delivery"] == "Message queued. Message sent"
    assert parts["notifier"].sent == [data["message"]]
    assert data["summary"]["matches"] == {"greenAbove": True, "redBelow": False}


def test_whatsapp_nothing_verified(client, parts):
    parts["chart_client"].closes = FLAT_CLOSES
    data = client.post("/api/tradingview/whatsapp/test", auth=AUTH).json()["data"]
    assert data["sent"] is False
    assert data["verified"] is False
    assert data["reason"] == "No verified candle detected. Nothing sent."
    assert parts["notifier"].sent == []


def test_whatsapp_missing_credentials(client, parts):
    parts["notifier"].configured = False
    res = client.post("/api/tradingview/whatsapp/test", json={"send": "yes"}, auth=AUTH)
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "CallMeBot credentials are missing"}


def test_preflight_not_challenged(client):
    res = client.options(
        "/api/tradingview/signal",
        headers={
            "Origin": "https://dashboard.example",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "Authorization",
        },
    )
    assert res.status_code == 200
    assert "www-authenticate" not in res.headers
    assert res.headers["access-control-allow-origin"] == "https://dashboard.example"
    assert res.headers["access-control-allow-credentials"] == "true"


def test_lifespan_starts_and_cancels_background_tasks(parts):
    app = create_app(start_background=True, **parts)
    with TestClient(app) as c:
        assert c.get("/health").status_code == 200
        tasks = [app.state.poller._task, app.state.scheduler._task]
        assert all(t is not None for t in tasks)
        assert not any(t.done() for t in tasks)

    assert all(t.done() for t in tasks)
    assert app.state.poller._task is None
    assert app.state.scheduler._task is None
