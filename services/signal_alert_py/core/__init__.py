"""Core utilities for the signal alert service.

This package provides clients for the market-data (Twelve Data) and
charting (TradingView) providers, the trailing-SMA candle classifier, an
in-memory chart cache, the CallMeBot notifier and the two background
loops (chart poller and alert scheduler).
"""

from .config import SYMBOLS, Settings, get_settings, load_settings
from .errors import DeliveryError, ProviderError
from .ohlc_fetcher import CandleBatch, TwelveDataFetcher, interval_minutes
from .cache import ChartCache, get_candles
from .indicators import compute_sma
from .rules import Analysis, Candle, Matches, analyze_bars, evaluate_matches
from .tradingview import (
    ChartRequest,
    TradingViewClient,
    format_tv_timestamp,
    normalize_chart_timeframe,
)
from .notifier import (
    TEST_PING_SUFFIX,
    CallMeBotNotifier,
    build_alert_message,
    describe_timeframe,
    normalize_pair_name,
)
from .alert_scheduler import AlertPreview, AlertScheduler, PollOutcome
from .poller import ChartPoller

__all__ = [
    "SYMBOLS",
    "Settings",
    "get_settings",
    "load_settings",
    "DeliveryError",
    "ProviderError",
    "CandleBatch",
    "TwelveDataFetcher",
    "interval_minutes",
    "ChartCache",
    "get_candles",
    "compute_sma",
    "Analysis",
    "Candle",
    "Matches",
    "analyze_bars",
    "evaluate_matches",
    "ChartRequest",
    "TradingViewClient",
    "format_tv_timestamp",
    "normalize_chart_timeframe",
    "TEST_PING_SUFFIX",
    "CallMeBotNotifier",
    "build_alert_message",
    "describe_timeframe",
    "normalize_pair_name",
    "AlertPreview",
    "AlertScheduler",
    "PollOutcome",
    "ChartPoller",
]
