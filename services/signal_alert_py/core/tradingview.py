# core/tradingview.py
"""Fetch chart bars from TradingView over its websocket chart session.

Sequence per request:

1. optional sign-in over HTTPS (falls back to a guest token when allowed),
2. symbol resolution through the public symbol-search endpoint,
3. a websocket chart session: ``set_auth_token`` → ``chart_create_session``
   → ``switch_timezone`` → ``resolve_symbol`` → ``create_series``; bars
   arrive in ``timescale_update`` messages until ``series_completed``.

Wire frames look like ``~m~<len>~m~<payload>``.  Heartbeat payloads
(``~h~<n>``) must be echoed back or the server drops the connection.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import math
import random
import re
import string
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import websockets

from .config import Settings
from .errors import ProviderError
from .rules import Analysis, analyze_bars

logger = logging.getLogger("tradingview")

WS_URL_TEMPLATE = "wss://{server}.tradingview.com/socket.io/websocket"
SIGNIN_URL = "https://www.tradingview.com/accounts/signin/"
SEARCH_URLS = (
    "https://symbol-search.tradingview.com/symbol_search/v3/",
    "https://symbol-search.tradingview.com/symbol_search/",
)
ORIGIN = "https://www.tradingview.com"
GUEST_TOKEN = "unauthorized_user_token"
MIN_RANGE = 20

_ERROR_METHODS = {"critical_error", "protocol_error", "symbol_error", "series_error"}
_TAG_RE = re.compile(r"</?[^>]+>")
_FRAME_RE = re.compile(r"~m~\d+~m~")

# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def normalize_chart_timeframe(tf: Optional[str]) -> str:
    """Map ``1h``/``15min``/``1d``-style timeframes to chart resolutions."""
    if not tf:
        return "60"
    lower = str(tf).strip().lower()
    if lower in {"d", "1d", "day"}:
        return "D"
    if lower in {"w", "1w", "week"}:
        return "W"
    if lower in {"m", "1m", "month"}:
        return "M"
    lead = re.match(r"^(\d+)", lower)
    value = int(lead.group(1)) if lead else 0
    if lower.endswith("h"):
        return str(value * 60) if value > 0 else "60"
    if lower.endswith("min") or lower.endswith("m"):
        return str(value) if value > 0 else "1"
    if lower.isdigit():
        return lower
    return "60"


def format_tv_timestamp(value: Any) -> Any:
    """Epoch seconds (or ms) to ``YYYY-MM-DD HH:MM:SS.mmm`` in UTC."""
    if value is None:
        return value
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return value
    if not math.isfinite(numeric):
        return value
    seconds = numeric / 1000 if numeric >= 1e12 else numeric
    try:
        stamp = dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return value
    return stamp.strftime("%Y-%m-%d %H:%M:%S.") + f"{stamp.microsecond // 1000:03d}"


def prepend_header(payload: str) -> str:
    return f"~m~{len(payload)}~m~{payload}"


def encode_message(method: str, params: List[Any]) -> str:
    return prepend_header(json.dumps({"m": method, "p": params}, separators=(",", ":")))


def decode_frames(raw: str) -> List[str]:
    """Split one websocket message into its ``~m~``-framed payloads.

    Payloads are cut at the frame headers; the announced length is not
    trusted (it counts bytes, not characters, for non-ASCII text).
    """
    if not raw:
        return []
    if not _FRAME_RE.match(raw):
        raise ProviderError(f"Malformed TradingView frame: {raw[:40]!r}", 502)
    return [frame for frame in _FRAME_RE.split(raw) if frame]


def _session_id(prefix: str) -> str:
    return prefix + "".join(random.choices(string.ascii_lowercase, k=12))


def _search_item_id(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    if isinstance(item.get("id"), str):
        return item["id"]
    symbol = _TAG_RE.sub("", str(item.get("symbol") or "")).strip()
    exchange = str(item.get("prefix") or item.get("exchange") or "").strip()
    if not symbol:
        return None
    return f"{exchange}:{symbol}" if exchange else symbol


# ──────────────────────────────────────────────────────────────────────────────
# Requests
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class ChartRequest:
    symbol: str
    timeframe: str
    range: int
    sma_period: int
    recent_count: int
    guest: bool = False
    allow_guest_fallback: bool = True
    verbose: bool = False

    @classmethod
    def defaults(cls, settings: Settings, **overrides: Any) -> "ChartRequest":
        values = {
            "symbol": settings.tv_symbol,
            "timeframe": settings.tv_interval,
            "range": settings.tv_fetch_range,
            "sma_period": settings.tv_sma_period,
            "recent_count": settings.tv_recent_count,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class ChartPeriods:
    periods: List[Dict[str, Any]]
    using_guest: bool
    resolved_symbol: str
    timeframe: str
    requested_range: int


class TradingViewClient:
    """Fetch bars for a symbol and run the SMA analysis on them."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._connect = connect or websockets.connect

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=timeout,
            headers={"Origin": ORIGIN, "Referer": ORIGIN + "/"},
        )

    async def login(self) -> Tuple[str, Dict[str, Any]]:
        """Return ``(auth_token, user)`` for the configured account."""
        s = self.settings
        if not s.tv_username or not s.tv_password:
            raise ProviderError("TradingView credentials are not configured", 401)
        async with self._http(s.tv_login_timeout_ms / 1000) as client:
            try:
                resp = await client.post(
                    SIGNIN_URL,
                    data={"username": s.tv_username, "password": s.tv_password, "remember": "on"},
                )
            except httpx.TimeoutException as e:
                raise ProviderError("TradingView client login timed out", 504) from e
            except httpx.HTTPError as e:
                raise ProviderError(f"TradingView sign-in failed: {e}", 502) from e
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400 or not isinstance(payload, dict):
            raise ProviderError(f"TradingView sign-in responded with {resp.status_code}", resp.status_code)
        if payload.get("error"):
            raise ProviderError(str(payload["error"]), 401)
        user = payload.get("user") or {}
        token = user.get("auth_token")
        if not token:
            raise ProviderError("TradingView sign-in returned no auth token", 502)
        return token, user

    async def _search(self, url: str, query: str) -> List[Any]:
        async with self._http(10.0) as client:
            resp = await client.get(url, params={"text": query, "lang": "en", "domain": "production"})
            resp.raise_for_status()
            data = resp.json()
        if isinstance(data, dict):
            data = data.get("symbols") or []
        return data if isinstance(data, list) else []

    async def resolve_symbol(self, raw_symbol: str) -> str:
        if not raw_symbol or not raw_symbol.strip():
            raise ProviderError("Missing TradingView symbol", 400)
        trimmed = raw_symbol.strip()
        symbol_only = trimmed.split(":", 1)[1].strip() if ":" in trimmed else trimmed
        queries = [trimmed]
        if symbol_only and symbol_only != trimmed:
            queries.append(symbol_only)

        for query in queries:
            for url in SEARCH_URLS:
                try:
                    results = await self._search(url, query)
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug("Symbol search %s for %r failed: %s", url, query, e)
                    continue
                ids = [i for i in (_search_item_id(r) for r in results) if i]
                if trimmed in ids:
                    return trimmed
                for item_id in ids:
                    if item_id == query or symbol_only in item_id:
                        return item_id
        return trimmed

    async def _authenticate(self, req: ChartRequest) -> Tuple[str, bool]:
        if req.guest:
            return GUEST_TOKEN, True
        try:
            token, user = await self.login()
        except ProviderError as e:
            if not req.allow_guest_fallback:
                raise ProviderError(f"TradingView login failed: {e.message}", e.status_code) from e
            logger.warning("TradingView login failed (%s). Falling back to guest mode.", e.message)
            return GUEST_TOKEN, True
        log = logger.info if req.verbose else logger.debug
        log("Authenticated TradingView user %s (#%s)", user.get("username"), user.get("id"))
        return token, False

    async def _collect_bars(self, ws, desired: int) -> Dict[int, List[Any]]:
        bars: Dict[int, List[Any]] = {}
        async for raw in ws:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            for frame in decode_frames(raw):
                if frame.startswith("~h~"):
                    await ws.send(prepend_header(frame))
                    continue
                try:
                    msg = json.loads(frame)
                except ValueError:
                    continue
                if not isinstance(msg, dict):
                    continue
                method = msg.get("m")
                params = msg.get("p") or []
                if method in _ERROR_METHODS:
                    detail = " ".join(str(p) for p in params[1:]) or method
                    raise ProviderError(f"Chart session error: {detail}", 502)
                if method in {"timescale_update", "du"} and len(params) > 1:
                    series = (params[1] or {}).get("sds_1") or {}
                    for point in series.get("s") or []:
                        values = point.get("v") or []
                        if len(values) >= 5:
                            bars[int(point.get("i", len(bars)))] = values
                if method == "series_completed" or len(bars) >= desired:
                    return bars
        raise ProviderError("TradingView closed the chart session before data arrived", 502)

    async def fetch_periods(self, req: ChartRequest) -> ChartPeriods:
        s = self.settings
        token, using_guest = await self._authenticate(req)
        if using_guest and req.verbose:
            logger.info("Proceeding with guest TradingView session.")

        resolved = await self.resolve_symbol(req.symbol)
        timeframe = normalize_chart_timeframe(req.timeframe)
        desired = max(int(req.range or 120), MIN_RANGE)
        (logger.info if req.verbose else logger.debug)(
            "Using resolved symbol %s with timeframe %s", resolved, timeframe
        )

        chart_session = _session_id("cs_")
        symbol_spec: Dict[str, Any] = {"symbol": resolved, "adjustment": "splits"}
        if s.tv_session_mode.lower() in {"regular", "extended"}:
            symbol_spec["session"] = s.tv_session_mode.lower()
        url = WS_URL_TEMPLATE.format(server=s.tv_server or "data")

        async with self._connect(url, additional_headers={"Origin": ORIGIN}) as ws:
            await ws.send(encode_message("set_auth_token", [token]))
            await ws.send(encode_message("chart_create_session", [chart_session, ""]))
            if s.tv_timezone:
                await ws.send(encode_message("switch_timezone", [chart_session, s.tv_timezone]))
            await ws.send(
                encode_message(
                    "resolve_symbol",
                    [chart_session, "sds_sym_1", "=" + json.dumps(symbol_spec, separators=(",", ":"))],
                )
            )
            await ws.send(
                encode_message(
                    "create_series",
                    [chart_session, "sds_1", "s1", "sds_sym_1", timeframe, desired, ""],
                )
            )
            try:
                raw_bars = await asyncio.wait_for(
                    self._collect_bars(ws, desired), timeout=s.tv_data_timeout_ms / 1000
                )
            except asyncio.TimeoutError as e:
                raise ProviderError("Timed out waiting for chart data", 504) from e

        ordered = [raw_bars[i] for i in sorted(raw_bars)][-desired:]
        periods = [
            {
                "time": format_tv_timestamp(v[0]),
                "open": v[1],
                "high": v[2],
                "low": v[3],
                "close": v[4],
                "volume": v[5] if len(v) > 5 else None,
            }
            for v in ordered
        ]
        return ChartPeriods(
            periods=periods,
            using_guest=using_guest,
            resolved_symbol=resolved,
            timeframe=timeframe,
            requested_range=desired,
        )

    async def fetch_analysis(self, req: ChartRequest) -> Analysis:
        result = await self.fetch_periods(req)
        return analyze_bars(
            result.periods,
            sma_period=req.sma_period,
            recent_count=req.recent_count,
            symbol=req.symbol,
            timeframe=req.timeframe,
            resolved_symbol=result.resolved_symbol,
            normalized_timeframe=result.timeframe,
            meta={"usingGuest": result.using_guest, "fetchRange": req.range},
        )
