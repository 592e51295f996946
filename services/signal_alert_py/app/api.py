"""
FastAPI application exposing cached market-data charts, the TradingView
SMA analysis and a manual trigger for the WhatsApp alert.

Everything under ``/api`` sits behind a static Basic-Auth credential.
On startup the chart poller and the alert scheduler run as background
tasks; both are cancelled on shutdown.
"""
from __future__ import annotations

import datetime as dt
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, ConfigDict, field_validator

from core import (
    SYMBOLS,
    TEST_PING_SUFFIX,
    AlertScheduler,
    CallMeBotNotifier,
    ChartCache,
    ChartPoller,
    ChartRequest,
    ProviderError,
    Settings,
    TradingViewClient,
    TwelveDataFetcher,
    get_candles,
    get_settings,
)
from core.config import parse_bool_flag, parse_positive_int
from core.logs import activity, configure_logging

logger = logging.getLogger("signal_api")

AUTH_REALM = 'Basic realm="Signal Alert"'
_basic = HTTPBasic(auto_error=False)


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------
class WhatsAppTestRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    timeframe: Optional[str] = None
    recentCount: Optional[Union[int, str]] = None
    sma: Optional[Union[int, str]] = None
    smaPeriod: Optional[Union[int, str]] = None
    dryRun: Optional[Union[bool, int, str]] = None
    send: Optional[Union[bool, int, str]] = None

    @field_validator("symbol", "timeframe")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class AuthError(Exception):
    pass


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


def _optional_int(value: Any) -> Optional[int]:
    parsed = parse_positive_int(value, 0)
    return parsed or None


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
def require_auth(
    request: Request, credentials: Optional[HTTPBasicCredentials] = Depends(_basic)
) -> str:
    settings: Settings = request.app.state.settings
    if credentials is None:
        raise AuthError()
    user_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.app_username.encode("utf-8")
    )
    pass_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.app_password.encode("utf-8")
    )
    if not (user_ok and pass_ok):
        raise AuthError()
    return credentials.username


def chart_request(
    request: Request,
    symbol: Optional[str] = Query(None, description="TradingView symbol, e.g. OANDA:XAUUSD"),
    timeframe: Optional[str] = Query(None, description="Timeframe: 15min, 1h, 4h, 1d…"),
    range_: Optional[str] = Query(None, alias="range"),
    sma: Optional[str] = Query(None),
    smaPeriod: Optional[str] = Query(None),
    count: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    guest: Optional[str] = Query(None),
    noFallback: Optional[str] = Query(None),
    verbose: Optional[str] = Query(None),
) -> ChartRequest:
    s: Settings = request.app.state.settings
    return ChartRequest(
        symbol=(symbol or s.tv_symbol).strip(),
        timeframe=(timeframe or s.tv_interval).strip(),
        range=parse_positive_int(range_, s.tv_fetch_range),
        sma_period=parse_positive_int(sma if sma is not None else smaPeriod, s.tv_sma_period),
        recent_count=parse_positive_int(count if count is not None else limit, s.tv_recent_count),
        guest=parse_bool_flag(guest, False),
        allow_guest_fallback=not parse_bool_flag(noFallback, False),
        verbose=parse_bool_flag(verbose, False),
    )


# ----------------------------------------------------------------------
# Error handlers
# ----------------------------------------------------------------------
def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError):
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "Access denied"},
            headers={"WWW-Authenticate": AUTH_REALM},
        )

    @app.exception_handler(ProviderError)
    async def _provider_error(request: Request, exc: ProviderError):
        activity.info("%s error: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.http_status, content={"success": False, "error": exc.message}
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Invalid request data"}
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Internal server error"}
        )


# ----------------------------------------------------------------------
# Endpoints
# ----------------------------------------------------------------------
router = APIRouter(prefix="/api", dependencies=[Depends(require_auth)])


@router.post("/login")
async def login(user: str = Depends(require_auth)):
    return {"success": True, "user": {"username": user}}


@router.get("/charts")
async def get_charts(
    request: Request,
    pair: Optional[str] = Query(None, description="Pair key: XAUUSD, USDJPY, US30"),
    hours: Optional[str] = Query(None, description="Lookback in hours (max 240)"),
):
    state = request.app.state
    pair_key = (pair or "XAUUSD").upper()
    lookback = parse_positive_int(hours, 24)

    if not state.fetcher.enabled:
        raise ProviderError("Twelve Data integration is disabled", 503)
    if pair_key not in SYMBOLS:
        raise ProviderError("Invalid pair", 400)

    batch = await get_candles(state.fetcher, state.cache, pair_key, lookback)
    return {"success": True, "data": batch.to_dict()}


@router.get("/tradingview/candles")
async def tradingview_candles(request: Request, req: ChartRequest = Depends(chart_request)):
    analysis = await request.app.state.chart_client.fetch_analysis(req)
    return {
        "success": True,
        "data": {
            "requestedSymbol": analysis.symbol,
            "symbol": analysis.symbol,
            "timeframe": analysis.timeframe,
            "smaPeriod": analysis.sma_period,
            "recentCount": analysis.recent_count,
            "totalBarsFetched": analysis.total_bars,
            "candles": [c.to_dict() for c in analysis.candles],
            "closes": analysis.closes,
            "sma": analysis.sma,
            "matches": analysis.matches_dict(),
            "meta": analysis.meta,
        },
    }


@router.get("/tradingview/matches")
async def tradingview_matches(request: Request, req: ChartRequest = Depends(chart_request)):
    analysis = await request.app.state.chart_client.fetch_analysis(req)
    matches = analysis.matches_dict()
    return {
        "success": True,
        "data": {
            "requestedSymbol": analysis.symbol,
            "symbol": analysis.symbol,
            "timeframe": analysis.timeframe,
            "smaPeriod": analysis.sma_period,
            "recentCount": analysis.recent_count,
            "greenAbove": matches["greenAbove"],
            "redBelow": matches["redBelow"],
            "totalBarsFetched": analysis.total_bars,
            "meta": analysis.meta,
        },
    }


@router.get("/tradingview/signal")
async def tradingview_signal(request: Request, req: ChartRequest = Depends(chart_request)):
    analysis = await request.app.state.chart_client.fetch_analysis(req)
    previous = analysis.previous_completed
    forming = analysis.forming
    return {
        "success": True,
        "data": {
            "requestedSymbol": analysis.symbol,
            "symbol": analysis.symbol,
            "timeframe": analysis.timeframe,
            "smaPeriod": analysis.sma_period,
            "totalBarsFetched": analysis.total_bars,
            "previousCompleted": analysis.previous_completed_dict(),
            "formingCandle": forming.to_dict() if forming else None,
            "triggered": previous.matches.verified if previous else None,
            "meta": analysis.meta,
        },
    }


@router.post("/tradingview/whatsapp/test")
async def whatsapp_test(
    request: Request,
    body: Optional[WhatsAppTestRequest] = None,
    symbol: Optional[str] = Query(None),
    timeframe: Optional[str] = Query(None),
    count: Optional[str] = Query(None),
    sma: Optional[str] = Query(None),
    dryRun: Optional[str] = Query(None),
    send: Optional[str] = Query(None),
):
    state = request.app.state
    body = body or WhatsAppTestRequest()
    dry_run = parse_bool_flag(_first(body.dryRun, dryRun), False)
    send_flag = parse_bool_flag(_first(body.send, send), True)
    actually_send = not dry_run and send_flag

    preview = await state.scheduler.prepare_alert(
        symbol=_first(body.symbol, symbol),
        timeframe=_first(body.timeframe, timeframe),
        recent_count=_optional_int(_first(body.recentCount, count)),
        sma_period=_optional_int(_first(body.sma, body.smaPeriod, sma)),
    )
    previous = preview.previous
    summary: Dict[str, Any] = {
        "symbol": preview.analysis.symbol,
        "timeframe": preview.analysis.timeframe,
        "previousTimestamp": previous.timestamp if previous else None,
        "matches": previous.matches.to_dict() if previous else {},
        "sma": previous.sma if previous else None,
    }
    message = (preview.message or "").strip()

    if not preview.is_verified or not message:
        return {
            "success": True,
            "data": {
                "sent": False,
                "dryRun": dry_run,
                "verified": False,
                "reason": "No verified candle detected. Nothing sent.",
                "message": None,
                "delivery": None,
                "summary": summary,
            },
        }

    delivery = None
    final_message = message
    if actually_send:
        notifier: CallMeBotNotifier = state.notifier
        if not notifier.configured:
            raise ProviderError("CallMeBot credentials are missing")
        final_message = f"{message} {TEST_PING_SUFFIX}"
        delivery = await notifier.send(final_message)
        activity.info(
            "WhatsApp test alert sent for %s %s.",
            preview.analysis.symbol, preview.analysis.timeframe,
        )

    return {
        "success": True,
        "data": {
            "sent": actually_send,
            "dryRun": dry_run,
            "verified": True,
            "message": final_message,
            "delivery": delivery,
            "summary": summary,
        },
    }


# ----------------------------------------------------------------------
# Application factory
# ----------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    fetcher: Optional[TwelveDataFetcher] = None,
    chart_client: Optional[TradingViewClient] = None,
    notifier: Optional[CallMeBotNotifier] = None,
    start_background: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    cache = ChartCache(settings.chart_cache_ttl_ms)
    if fetcher is None:
        fetcher = TwelveDataFetcher(settings, cache=cache)
    elif fetcher.cache is None:
        fetcher.cache = cache
    else:
        cache = fetcher.cache
    chart_client = chart_client or TradingViewClient(settings)
    notifier = notifier or CallMeBotNotifier(settings.callmebot_phone, settings.callmebot_api_key)
    scheduler = AlertScheduler(settings, chart_client, notifier)
    poller = ChartPoller(settings, fetcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_dir)
        if start_background:
            poller.start()
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            await poller.stop()

    app = FastAPI(title="Signal Alert API", lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = cache
    app.state.fetcher = fetcher
    app.state.chart_client = chart_client
    app.state.notifier = notifier
    app.state.scheduler = scheduler
    app.state.poller = poller

    cors_kwargs: Dict[str, Any] = {
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
    }
    if settings.allow_all_origins:
        cors_kwargs["allow_origin_regex"] = ".*"
    else:
        cors_kwargs["allow_origins"] = settings.cors_allowed_origins
    app.add_middleware(CORSMiddleware, **cors_kwargs)

    register_error_handlers(app)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": _now_iso()}

    app.include_router(router)
    return app


app = create_app()
