# core/ohlc_fetcher.py
"""Fetch OHLCV candles from the Twelve Data ``time_series`` endpoint.

The requested lookback (in hours) is converted to a number of points for
the symbol's interval, capped at the configured max output size.  Rows are
validated, sorted oldest first and truncated to that window.  Every
successful fetch is written to the chart cache.

All errors surface as ``ProviderError`` with the HTTP status the API layer
should answer with.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import pandas as pd

from .config import SYMBOLS, Settings
from .errors import ProviderError
from .logs import activity, mask_secret

logger = logging.getLogger("ohlc_fetcher")

DEFAULT_HOURS = 24

_INTERVAL_RE = re.compile(r"^(\d+)(min|h|day|week|month)$")
_UNIT_MINUTES = {"min": 1, "h": 60, "day": 1440, "week": 10080, "month": 43200}

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]

# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def interval_minutes(interval: Optional[str]) -> int:
    """Minutes per candle for a Twelve Data interval; 60 when unparsable."""
    if not isinstance(interval, str) or not interval.strip():
        return 60
    match = _INTERVAL_RE.match(interval.strip().lower())
    if not match:
        return 60
    value = int(match.group(1))
    if value <= 0:
        return 60
    return value * _UNIT_MINUTES[match.group(2)]


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def _column(frame: pd.DataFrame, name: str) -> List[Optional[float]]:
    return [None if pd.isna(v) else float(v) for v in frame[name]]


@dataclass
class CandleBatch:
    pair: str
    provider_symbol: str
    interval: str
    frame: pd.DataFrame
    last_updated: str
    lookback_hours: float
    fetch_duration_ms: int
    requested_output_size: int
    meta: Optional[Dict[str, Any]] = None
    source: str = "twelvedata"
    timestamps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair": self.pair,
            "symbol": self.provider_symbol,
            "providerSymbol": self.provider_symbol,
            "interval": self.interval,
            "resolution": self.interval,
            "timestamps": list(self.timestamps),
            "open": _column(self.frame, "open"),
            "high": _column(self.frame, "high"),
            "low": _column(self.frame, "low"),
            "close": _column(self.frame, "close"),
            "volume": _column(self.frame, "volume"),
            "lastUpdated": self.last_updated,
            "lookbackHours": self.lookback_hours,
            "fetchDurationMs": self.fetch_duration_ms,
            "meta": self.meta,
            "source": self.source,
            "requestedOutputSize": self.requested_output_size,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Twelve Data
# ──────────────────────────────────────────────────────────────────────────────

class TwelveDataFetcher:
    """Async client for the Twelve Data time series API."""

    def __init__(
        self,
        settings: Settings,
        cache=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._timeout = timeout
        if settings.twelvedata_enabled:
            logger.info(
                "Twelve Data base=%s endpoint=%s key=%s",
                settings.twelvedata_base_url,
                settings.twelvedata_time_series_endpoint,
                mask_secret(settings.twelvedata_api_key),
            )

    @property
    def enabled(self) -> bool:
        return self.settings.twelvedata_enabled

    def build_time_series_url(self, symbol: str, interval: str, outputsize: int) -> str:
        s = self.settings
        endpoint = s.twelvedata_time_series_endpoint.lstrip("/")
        params: Dict[str, Any] = {
            "symbol": symbol,
            "interval": interval,
            "outputsize": str(outputsize),
            "apikey": s.twelvedata_api_key,
            "format": "JSON",
        }
        if s.twelvedata_timezone:
            params["timezone"] = s.twelvedata_timezone
        if s.twelvedata_order:
            params["order"] = s.twelvedata_order
        return str(httpx.URL(f"{s.twelvedata_base_url}/{endpoint}", params=params))

    async def request_candles(self, pair: str, hours: Optional[float] = None) -> CandleBatch:
        if not self.enabled:
            raise ProviderError("Twelve Data integration is disabled", 503)

        meta = SYMBOLS.get(pair)
        if meta is None:
            raise ProviderError(f"Unsupported symbol: {pair}", 400)

        interval = meta.interval or self.settings.twelvedata_default_interval
        minutes = max(interval_minutes(interval), 1)
        requested_hours = hours if hours is not None and math.isfinite(hours) and hours > 0 else DEFAULT_HOURS
        points_needed = max(math.ceil(requested_hours * 60 / minutes), 1)
        outputsize = min(points_needed, self.settings.twelvedata_max_outputsize)

        url = self.build_time_series_url(meta.provider_symbol, interval, outputsize)

        started = time.monotonic()
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = await client.get(url)
            except httpx.HTTPError as e:
                raise ProviderError(f"Twelve Data request failed: {e}", 502) from e
        raw_text = resp.text

        if resp.status_code >= 400:
            raise ProviderError(
                f"Twelve Data responded with {resp.status_code}: {raw_text}", resp.status_code
            )

        try:
            payload = json.loads(raw_text) if raw_text else {}
        except ValueError as e:
            raise ProviderError(f"Unable to parse Twelve Data response: {e}", 502) from e
        if not isinstance(payload, dict):
            payload = {}

        status = payload.get("status")
        if status and status != "ok":
            raise ProviderError(
                payload.get("message") or "Twelve Data returned an error response",
                payload.get("code") or 502,
            )
        if payload.get("code") and payload.get("message") and not status:
            raise ProviderError(payload["message"], payload["code"])

        values = payload.get("values")
        if not isinstance(values, list) or not values:
            raise ProviderError("Twelve Data returned no candle data", 404)

        rows = [v for v in values if isinstance(v, dict)]
        rows.sort(key=lambda r: r.get("datetime") or "")
        rows = rows[-outputsize:]

        frame = pd.DataFrame(
            [{col: _to_number(r.get(col)) for col in OHLCV_COLUMNS} for r in rows],
            columns=OHLCV_COLUMNS,
            dtype=float,
        )
        timestamps = [r.get("datetime") for r in rows]
        last_dt = timestamps[-1] if timestamps else None

        effective_hours = max(len(rows) * minutes / 60, minutes / 60)
        batch = CandleBatch(
            pair=pair,
            provider_symbol=meta.provider_symbol,
            interval=interval,
            frame=frame,
            timestamps=timestamps,
            last_updated=last_dt or dt.datetime.now(dt.timezone.utc).isoformat(),
            lookback_hours=min(requested_hours, effective_hours),
            fetch_duration_ms=int((time.monotonic() - started) * 1000),
            meta=payload.get("meta"),
            requested_output_size=outputsize,
        )

        if self.cache is not None:
            self.cache.store(pair, batch)

        if last_dt:
            activity.info(
                "%s: fetched %sh window via Twelve Data, latest candle %s, took %sms",
                pair, requested_hours, last_dt, batch.fetch_duration_ms,
            )
        else:
            activity.info(
                "%s: fetched %sh window via Twelve Data, took %sms",
                pair, requested_hours, batch.fetch_duration_ms,
            )
        return batch
