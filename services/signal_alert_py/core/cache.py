"""In-memory chart cache keyed by pair.

An entry is served only while it is fresh (younger than the TTL) and
covers at least the requested lookback.  Entries are overwritten by the
next fetch of the same pair and never evicted otherwise; the key space is
the fixed symbol table.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .ohlc_fetcher import DEFAULT_HOURS, CandleBatch, TwelveDataFetcher

MAX_LOOKBACK_HOURS = 240


@dataclass
class CacheEntry:
    batch: CandleBatch
    cached_at: float


class ChartCache:
    def __init__(self, ttl_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_ms / 1000.0
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def store(self, pair: str, batch: CandleBatch) -> None:
        self._entries[pair] = CacheEntry(batch=batch, cached_at=self._clock())

    def lookup(self, pair: str, hours: float) -> Optional[CandleBatch]:
        entry = self._entries.get(pair)
        if entry is None:
            return None
        is_fresh = self._clock() - entry.cached_at < self.ttl_seconds
        if is_fresh and entry.batch.lookback_hours >= hours:
            return entry.batch
        return None

    def __len__(self) -> int:
        return len(self._entries)


def normalize_hours(hours: Optional[float]) -> float:
    if hours is None or hours <= 0:
        return DEFAULT_HOURS
    return min(hours, MAX_LOOKBACK_HOURS)


async def get_candles(
    fetcher: TwelveDataFetcher, cache: ChartCache, pair: str, hours: Optional[float]
) -> CandleBatch:
    """Serve a pair from the cache, fetching when stale or too short."""
    normalized = normalize_hours(hours)
    cached = cache.lookup(pair, normalized)
    if cached is not None:
        return cached
    return await fetcher.request_candles(pair, normalized)
