"""
Background chart poller.

Refreshes the chart cache for every pair in the symbol table: once at
startup, then every ``POLL_INTERVAL_MS``.  A failing pair is logged and
does not stop the others.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .config import SYMBOLS, Settings
from .logs import activity
from .ohlc_fetcher import TwelveDataFetcher

logger = logging.getLogger("poller")


class ChartPoller:
    def __init__(
        self,
        settings: Settings,
        fetcher: TwelveDataFetcher,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> List[str]:
        """Fetch every pair sequentially; return the pairs that failed."""
        failed: List[str] = []
        if not self.fetcher.enabled:
            return failed
        for pair in SYMBOLS:
            try:
                await self.fetcher.request_candles(pair, self.settings.poll_lookback_hours)
            except Exception as e:
                activity.info("Error polling %s: %s", pair, e)
                failed.append(pair)
        return failed

    async def run_forever(self) -> None:
        interval = self.settings.poll_interval_ms / 1000
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                activity.info("Poll tick failed: %s", e)
            await self._sleep(interval)

    def start(self) -> Optional[asyncio.Task]:
        if not self.fetcher.enabled:
            logger.info("Twelve Data polling disabled (no API key configured).")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="chart-poller")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
