"""Environment-driven settings for the signal alert service.

Values are read once per process from the environment (a ``.env`` file
next to the working directory is loaded first).  Every knob has a default
so the API starts without any configuration; the market-data fetcher and
the alert scheduler simply stay disabled until their credentials exist.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv

_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")

# ──────────────────────────────────────────────────────────────────────────────
# Env helpers (strip quotes/whitespace so .env "KEY=value " doesn’t break things)
# ──────────────────────────────────────────────────────────────────────────────

def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
        v = v[1:-1].strip()
    return v or default


def parse_positive_int(value, fallback: int) -> int:
    """Leading integer of ``value`` (``"1.5"`` -> 1, ``"120abc"`` -> 120) if positive."""
    if value is None:
        return fallback
    match = _LEADING_INT_RE.match(str(value))
    if not match:
        return fallback
    parsed = int(match.group(1))
    return parsed if parsed > 0 else fallback


def parse_bool_flag(value, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "y"}:
        return True
    if normalized in {"0", "false", "no", "n"}:
        return False
    return default


def parse_symbol_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [s.strip() for s in re.split(r"[\s,]+", str(value)) if s.strip()]


# ──────────────────────────────────────────────────────────────────────────────
# Symbol table
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SymbolMeta:
    provider_symbol: str
    label: str
    interval: str = "1h"


SYMBOLS: Dict[str, SymbolMeta] = {
    "XAUUSD": SymbolMeta("XAU/USD", "Gold / XAUUSD"),
    "USDJPY": SymbolMeta("USD/JPY", "USDJPY"),
    "US30": SymbolMeta("DJI", "US30 / Dow Jones"),
}


# ──────────────────────────────────────────────────────────────────────────────
# Settings
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class Settings:
    server_host: str = "0.0.0.0"
    server_port: int = 3000
    app_username: str = "admin"
    app_password: str = "admin"
    cors_allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    # Twelve Data
    twelvedata_api_key: str = ""
    twelvedata_base_url: str = "https://api.twelvedata.com"
    twelvedata_time_series_endpoint: str = "/time_series"
    twelvedata_default_interval: str = "1h"
    twelvedata_timezone: str = ""
    twelvedata_order: str = "desc"
    twelvedata_max_outputsize: int = 5000
    poll_lookback_hours: int = 24
    poll_interval_ms: int = 5 * 60 * 1000
    chart_cache_ttl_ms: int = 5 * 60 * 1000

    # TradingView
    tv_symbol: str = "OANDA:XAUUSD"
    tv_interval: str = "1h"
    tv_fetch_range: int = 120
    tv_sma_period: int = 9
    tv_recent_count: int = 10
    tv_username: str = ""
    tv_password: str = ""
    tv_server: str = "data"
    tv_timezone: str = "Etc/UTC"
    tv_session_mode: str = ""
    tv_login_timeout_ms: int = 15000
    tv_data_timeout_ms: int = 20000

    # CallMeBot / WhatsApp alerts
    callmebot_phone: str = ""
    callmebot_api_key: str = ""
    alert_symbols: List[str] = field(default_factory=list)
    alert_timeframe: str = ""
    alert_poll_interval_ms: int = 60 * 60 * 1000
    alert_retry_interval_ms: int = 5 * 60 * 1000
    alert_max_retries: int = 3
    alert_enabled: Optional[bool] = None

    # Observability
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self) -> None:
        self.twelvedata_base_url = self.twelvedata_base_url.rstrip("/")
        self.twelvedata_order = "asc" if self.twelvedata_order.lower() == "asc" else "desc"
        if not self.alert_symbols and self.tv_symbol:
            self.alert_symbols = [self.tv_symbol]
        if not self.alert_timeframe:
            self.alert_timeframe = self.tv_interval
        self.alert_max_retries = max(1, self.alert_max_retries)
        if self.alert_enabled is None:
            self.alert_enabled = self.has_callmebot_credentials

    @property
    def twelvedata_enabled(self) -> bool:
        return bool(self.twelvedata_api_key)

    @property
    def has_callmebot_credentials(self) -> bool:
        return bool(self.callmebot_phone and self.callmebot_api_key)

    @property
    def allow_all_origins(self) -> bool:
        return "*" in self.cors_allowed_origins

    @property
    def primary_alert_symbol(self) -> str:
        return self.alert_symbols[0] if self.alert_symbols else self.tv_symbol

    @property
    def alert_recent_count(self) -> int:
        return max(self.tv_recent_count, 10)


def _int(name: str, default: int) -> int:
    return parse_positive_int(_env(name), default)


def load_settings() -> Settings:
    """Build settings from the process environment."""
    load_dotenv()
    alert_symbols = list(
        dict.fromkeys(
            parse_symbol_list(_env("WHATSAPP_ALERT_SYMBOLS"))
            + parse_symbol_list(_env("WHATSAPP_ALERT_SYMBOL"))
        )
    )
    enabled_raw = _env("WHATSAPP_ALERT_ENABLED")
    phone = _env("CALLMEBOT_PHONE", "") or ""
    api_key = _env("CALLMEBOT_API_KEY", "") or ""
    return Settings(
        server_host=_env("SERVER_HOST", "0.0.0.0"),
        server_port=_int("SERVER_PORT", 3000),
        app_username=_env("APP_USERNAME", "admin"),
        app_password=_env("APP_PASSWORD", "admin"),
        cors_allowed_origins=[
            o.strip() for o in (_env("CORS_ALLOWED_ORIGINS", "*") or "*").split(",") if o.strip()
        ],
        twelvedata_api_key=_env("TWELVEDATA_API_KEY", "") or "",
        twelvedata_base_url=_env("TWELVEDATA_BASE_URL", "https://api.twelvedata.com"),
        twelvedata_time_series_endpoint=_env("TWELVEDATA_TIME_SERIES_ENDPOINT", "/time_series"),
        twelvedata_default_interval=_env("TWELVEDATA_DEFAULT_INTERVAL", "1h"),
        twelvedata_timezone=_env("TWELVEDATA_TIMEZONE", "") or "",
        twelvedata_order=_env("TWELVEDATA_ORDER", "desc"),
        twelvedata_max_outputsize=_int("TWELVEDATA_MAX_OUTPUTSIZE", 5000),
        poll_lookback_hours=_int("POLL_LOOKBACK_HOURS", 24),
        poll_interval_ms=_int("POLL_INTERVAL_MS", 5 * 60 * 1000),
        chart_cache_ttl_ms=_int("CHART_CACHE_TTL_MS", 5 * 60 * 1000),
        tv_symbol=_env("TRADINGVIEW_SYMBOL", "OANDA:XAUUSD"),
        tv_interval=_env("TRADINGVIEW_INTERVAL", "1h"),
        tv_fetch_range=_int("TRADINGVIEW_FETCH_RANGE", 120),
        tv_sma_period=_int("TRADINGVIEW_SMA_LENGTH", 9),
        tv_recent_count=_int("TRADINGVIEW_RECENT_COUNT", 10),
        tv_username=_env("TRADINGVIEW_USERNAME", "") or "",
        tv_password=_env("TRADINGVIEW_PASSWORD", "") or "",
        tv_server=_env("TRADINGVIEW_SERVER", "data"),
        tv_timezone=_env("TRADINGVIEW_TIMEZONE", "Etc/UTC"),
        tv_session_mode=_env("TRADINGVIEW_SESSION_MODE", "") or "",
        tv_login_timeout_ms=_int("TRADINGVIEW_LOGIN_TIMEOUT_MS", 15000),
        tv_data_timeout_ms=_int("TRADINGVIEW_DATA_TIMEOUT_MS", 20000),
        callmebot_phone=phone,
        callmebot_api_key=api_key,
        alert_symbols=alert_symbols,
        alert_timeframe=_env("WHATSAPP_ALERT_TIMEFRAME", "") or "",
        alert_poll_interval_ms=_int("WHATSAPP_POLL_INTERVAL_MS", 60 * 60 * 1000),
        alert_retry_interval_ms=_int("WHATSAPP_RETRY_INTERVAL_MS", 5 * 60 * 1000),
        alert_max_retries=_int("WHATSAPP_MAX_RETRIES", 3),
        alert_enabled=parse_bool_flag(enabled_raw, bool(phone and api_key)),
        log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
        log_dir=_env("LOG_DIR", "logs"),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
