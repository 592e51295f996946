"""
Alert scheduler for SMA candle signals.

A single repeating timer re-evaluates every configured symbol.  When the
most recently completed candle is verified (green above / red below the
MA) a formatted message is sent through the webhook.  Repeat alerts are
suppressed by remembering, per symbol, the timestamp of the candle last
alerted on.

Timing: the first cycle runs immediately.  A clean cycle schedules the
next one after the base interval (never under one hour).  A cycle with
errors retries after ``retry_interval * consecutive_failures`` (retry
interval never under one minute) until ``max_retries`` is exceeded, after
which the failure count resets and the base interval applies again.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .config import Settings
from .errors import ProviderError
from .logs import activity
from .notifier import CallMeBotNotifier, build_alert_message
from .rules import Analysis, Candle
from .tradingview import ChartRequest, TradingViewClient

logger = logging.getLogger("alert_scheduler")

MIN_BASE_INTERVAL_S = 60 * 60
MIN_RETRY_INTERVAL_S = 60


@dataclass
class AlertPreview:
    analysis: Analysis
    message: str
    forming: Optional[Candle]
    previous: Optional[Candle]

    @property
    def is_verified(self) -> bool:
        return self.previous is not None and self.previous.matches.verified


@dataclass
class PollOutcome:
    symbol: str
    verified: bool = False
    sent: bool = False
    error: Optional[BaseException] = None


class AlertScheduler:
    def __init__(
        self,
        settings: Settings,
        chart_client: TradingViewClient,
        notifier: CallMeBotNotifier,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.chart_client = chart_client
        self.notifier = notifier
        self._sleep = sleep
        self.symbols: List[str] = list(settings.alert_symbols)
        self.last_alerted: Dict[str, str] = {}
        self.consecutive_failures = 0
        self.base_interval = max(settings.alert_poll_interval_ms / 1000, MIN_BASE_INTERVAL_S)
        self.retry_interval = max(settings.alert_retry_interval_ms / 1000, MIN_RETRY_INTERVAL_S)
        self.max_retries = max(1, settings.alert_max_retries)
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    async def prepare_alert(
        self,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        sma_period: Optional[int] = None,
        recent_count: Optional[int] = None,
        range: Optional[int] = None,
        guest: bool = False,
        allow_guest_fallback: bool = True,
    ) -> AlertPreview:
        s = self.settings
        target = (str(symbol).strip() if symbol else "") or s.primary_alert_symbol
        if not target:
            raise ProviderError("No symbol provided for WhatsApp alert", 400)

        req = ChartRequest(
            symbol=target,
            timeframe=timeframe or s.alert_timeframe or s.tv_interval,
            range=range or s.tv_fetch_range,
            sma_period=sma_period or s.tv_sma_period,
            recent_count=recent_count or s.alert_recent_count,
            guest=guest,
            allow_guest_fallback=allow_guest_fallback,
        )
        analysis = await self.chart_client.fetch_analysis(req)
        forming = analysis.forming
        previous = analysis.previous_completed
        message = build_alert_message(analysis.symbol, analysis.timeframe, previous, forming)
        return AlertPreview(analysis=analysis, message=message, forming=forming, previous=previous)

    async def poll_symbol(self, symbol: str) -> PollOutcome:
        key = symbol.upper()
        preview = await self.prepare_alert(symbol=symbol)
        prev_ts = preview.previous.timestamp if preview.previous else None
        message = (preview.message or "").strip()

        if not prev_ts or not preview.is_verified or not message:
            return PollOutcome(symbol)
        if self.last_alerted.get(key) == prev_ts:
            return PollOutcome(symbol, verified=True)

        await self.notifier.send(message)
        self.last_alerted[key] = prev_ts
        activity.info(
            "WhatsApp alert sent for %s %s (%s).",
            preview.analysis.symbol, preview.analysis.timeframe, prev_ts,
        )
        return PollOutcome(symbol, verified=True, sent=True)

    async def _poll_guarded(self, symbol: str) -> PollOutcome:
        try:
            return await self.poll_symbol(symbol)
        except Exception as e:
            activity.info("WhatsApp alert error for %s: %s", symbol, e)
            logger.warning("Alert poll for %s failed: %s", symbol, e)
            return PollOutcome(symbol, error=e)

    async def poll_all(self) -> List[PollOutcome]:
        return list(await asyncio.gather(*(self._poll_guarded(s) for s in self.symbols)))

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------
    def next_delay(self, had_errors: bool, reason: Optional[str] = None) -> float:
        """Record the outcome of a cycle and return seconds until the next."""
        if not had_errors:
            self.consecutive_failures = 0
            return self.base_interval

        self.consecutive_failures += 1
        prefix = f"WhatsApp alert error: {reason}." if reason else "WhatsApp poll encountered errors."
        if self.consecutive_failures > self.max_retries:
            activity.info(
                "%s Max retries reached; scheduling next run at the normal interval.", prefix
            )
            self.consecutive_failures = 0
            return self.base_interval

        delay = self.retry_interval * self.consecutive_failures
        activity.info(
            "%s Retrying in %sms (attempt %s/%s).",
            prefix, int(delay * 1000), self.consecutive_failures, self.max_retries,
        )
        return delay

    async def run_cycle(self) -> float:
        try:
            outcomes = await self.poll_all()
        except Exception as e:
            logger.exception("Alert cycle failed")
            return self.next_delay(True, reason=str(e))
        return self.next_delay(any(o.error is not None for o in outcomes))

    async def run_forever(self) -> None:
        delay = 0.0
        while True:
            await self._sleep(delay)
            delay = await self.run_cycle()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def disabled_reason(self) -> Optional[str]:
        s = self.settings
        if not s.alert_enabled:
            return "WhatsApp alerts disabled. Set WHATSAPP_ALERT_ENABLED=1 to turn them on."
        if not self.notifier.configured:
            return "WhatsApp alerts disabled: missing CALLMEBOT_PHONE or CALLMEBOT_API_KEY."
        if not self.symbols:
            return "WhatsApp alerts disabled: no TradingView symbols configured."
        return None

    def start(self) -> Optional[asyncio.Task]:
        reason = self.disabled_reason()
        if reason:
            logger.warning(reason)
            return None
        if self._task is None or self._task.done():
            activity.info(
                "WhatsApp alerts armed for %s. Base interval: %sms. Retry interval: %sms (max %s retries).",
                ", ".join(self.symbols),
                int(self.base_interval * 1000),
                int(self.retry_interval * 1000),
                self.max_retries,
            )
            self._task = asyncio.create_task(self.run_forever(), name="alert-scheduler")
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
