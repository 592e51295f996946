"""
Classify candles against their trailing SMA.

A candle is a *green above* match when it closed up and its whole range
(the low) sits above the SMA, and a *red below* match when it closed down
and its high sits below the SMA.  ``analyze_bars`` turns a list of raw
bars into the recent-candle view used by the API and the alert scheduler:
the last candle is still forming, the one before it is the most recently
completed candle and the only one an alert is raised for.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .errors import ProviderError
from .indicators import compute_sma

OHLCV = ("open", "high", "low", "close", "volume")


def _finite(value: Optional[float]) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


@dataclass
class Matches:
    green_above: bool = False
    red_below: bool = False

    @property
    def verified(self) -> bool:
        return self.green_above or self.red_below

    def to_dict(self) -> Dict[str, bool]:
        return {"greenAbove": self.green_above, "redBelow": self.red_below}


@dataclass
class Candle:
    index: int
    timestamp: Optional[str]
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: Optional[float]
    volume: Optional[float] = None
    sma: Optional[float] = None
    forming: bool = False
    matches: Matches = field(default_factory=Matches)

    @property
    def number(self) -> int:
        return self.index + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "number": self.number,
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "sma": self.sma,
            "forming": self.forming,
            "matches": self.matches.to_dict(),
        }


def evaluate_matches(candle: Candle) -> Matches:
    """Both flags are False unless sma and all four prices are finite."""
    if not all(_finite(v) for v in (candle.sma, candle.open, candle.close, candle.high, candle.low)):
        return Matches()
    return Matches(
        green_above=candle.close > candle.open and candle.low > candle.sma,
        red_below=candle.close < candle.open and candle.high < candle.sma,
    )


@dataclass
class Analysis:
    symbol: str
    resolved_symbol: str
    timeframe: str
    normalized_timeframe: str
    sma_period: int
    total_bars: int
    candles: List[Candle]
    closes: List[Dict[str, Any]]
    sma: Optional[float]
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def recent_count(self) -> int:
        return len(self.candles)

    @property
    def forming(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    @property
    def previous_completed(self) -> Optional[Candle]:
        return self.candles[-2] if len(self.candles) >= 2 else None

    @property
    def green_above(self) -> List[Candle]:
        return [c for c in self.candles if c.matches.green_above]

    @property
    def red_below(self) -> List[Candle]:
        return [c for c in self.candles if c.matches.red_below]

    def matches_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "greenAbove": [c.to_dict() for c in self.green_above],
            "redBelow": [c.to_dict() for c in self.red_below],
        }

    def previous_completed_dict(self) -> Optional[Dict[str, Any]]:
        prev = self.previous_completed
        if prev is None:
            return None
        forming = self.forming
        return {
            "candle": prev.to_dict(),
            "matches": prev.matches.to_dict(),
            "formingReference": forming.to_dict() if forming else None,
        }


def analyze_bars(
    bars: Sequence[Dict[str, Any]],
    sma_period: int,
    recent_count: int,
    symbol: str = "",
    timeframe: str = "",
    resolved_symbol: Optional[str] = None,
    normalized_timeframe: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Analysis:
    """
    Attach the trailing SMA to every bar, keep the last ``recent_count``
    (at least one) and evaluate matches for them.  ``bars`` must be
    ordered oldest first; each bar carries a ``time`` (or ``datetime`` /
    ``date``) and OHLCV values.
    """
    if not bars:
        raise ProviderError("No bars returned from TradingView")

    frame = pd.DataFrame(
        [{k: _to_number(bar.get(k)) for k in OHLCV} for bar in bars],
        columns=list(OHLCV),
        dtype=float,
    )
    sma = compute_sma(frame["close"], sma_period)

    candles: List[Candle] = []
    for i, bar in enumerate(bars):
        row = frame.iloc[i]
        candles.append(
            Candle(
                index=i,
                timestamp=bar.get("time") or bar.get("datetime") or bar.get("date"),
                open=_to_number(row["open"]),
                high=_to_number(row["high"]),
                low=_to_number(row["low"]),
                close=_to_number(row["close"]),
                volume=_to_number(row["volume"]),
                sma=_to_number(sma.iloc[i]),
            )
        )

    recent = candles[-max(recent_count, 1):]
    latest = recent[-1]
    for c in recent:
        c.matches = evaluate_matches(c)
    latest.forming = True

    has_sma = _finite(latest.sma)
    closes: List[Dict[str, Any]] = []
    start = len(candles) - 1 - sma_period
    if has_sma and start >= 0:
        closes = [{"timestamp": c.timestamp, "close": c.close} for c in candles[start:-1]]

    return Analysis(
        symbol=symbol,
        resolved_symbol=resolved_symbol or symbol,
        timeframe=timeframe,
        normalized_timeframe=normalized_timeframe or timeframe,
        sma_period=sma_period,
        total_bars=len(candles),
        candles=recent,
        closes=closes,
        sma=latest.sma if has_sma else None,
        meta=dict(meta or {}),
    )
