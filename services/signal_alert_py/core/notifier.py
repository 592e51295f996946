"""
Alert text formatting and delivery through the CallMeBot WhatsApp webhook.

``build_alert_message`` only produces text for a verified candle (green
above or red below the MA); callers treat an empty string as "nothing to
send".  ``CallMeBotNotifier.send`` raises ``DeliveryError`` unless the
webhook confirms the message.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Optional

import httpx
import pandas as pd

from .errors import DeliveryError
from .logs import mask_secret
from .rules import Candle

logger = logging.getLogger("notifier")

CALLMEBOT_URL = "https://api.callmebot.com/whatsapp.php"
TEST_PING_SUFFIX = "Just a quick test ping so you know I'm awake."

_TIMEFRAME_LABELS = {
    "1": "1 minute",
    "3": "3 minutes",
    "5": "5 minutes",
    "15": "15 minutes",
    "30": "30 minutes",
    "45": "45 minutes",
    "60": "1 hour",
    "120": "2 hours",
    "180": "3 hours",
    "240": "4 hours",
    "360": "6 hours",
    "480": "8 hours",
    "720": "12 hours",
    "d": "daily",
    "w": "weekly",
    "m": "monthly",
}


def describe_timeframe(code: Optional[str]) -> str:
    if not code:
        return ""
    normalized = str(code).strip().lower()
    if normalized in _TIMEFRAME_LABELS:
        return _TIMEFRAME_LABELS[normalized]
    lead = re.match(r"^(\d+)", normalized)
    if lead and normalized.endswith("h"):
        hours = int(lead.group(1))
        return "1 hour" if hours == 1 else f"{hours} hours"
    if lead and normalized.endswith("m"):
        minutes = int(lead.group(1))
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    return normalized


def normalize_pair_name(symbol: Optional[str]) -> str:
    if not symbol or not str(symbol).strip():
        return "pair"
    return str(symbol).strip().split(":")[-1].lower()


def _format_close_time(timestamp: Optional[str]) -> str:
    if not timestamp:
        return "the last candle"
    try:
        ts = pd.Timestamp(timestamp)
    except (TypeError, ValueError):
        return str(timestamp)
    if pd.isna(ts):
        return str(timestamp)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts.strftime("%Y-%m-%d %H:%M UTC")


def _format_price(value: Optional[float]) -> Optional[str]:
    if value is None or not math.isfinite(value):
        return None
    return f"{value:.2f}"


def build_alert_message(
    symbol: str,
    timeframe: str,
    previous: Optional[Candle],
    forming: Optional[Candle] = None,
) -> str:
    """Friendly one-paragraph alert for a verified previous candle, else ''."""
    if previous is None or not previous.matches.verified:
        return ""

    pattern = (
        "it's a green above the MA" if previous.matches.green_above else "it's a red below the MA"
    )
    label = describe_timeframe(timeframe)
    timeframe_text = f" on the {label} chart" if label else ""
    parts = [
        f"I just spotted a candle on the {normalize_pair_name(symbol)} pair similar to your "
        f"pattern{timeframe_text} (closed {_format_close_time(previous.timestamp)}), {pattern}."
    ]
    close = _format_price(previous.close)
    if close:
        parts.append(f"It closed around {close}.")
    forming_close = _format_price(forming.close) if forming is not None else None
    if forming_close:
        parts.append(f"The one forming now is hovering close to {forming_close}.")
    parts.append("Please do well to check it out.")
    return " ".join(parts)


class CallMeBotNotifier:
    def __init__(
        self,
        phone: str,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
    ) -> None:
        self.phone = phone
        self.api_key = api_key
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.phone and self.api_key)

    async def send(self, text: str) -> str:
        if not self.configured:
            raise DeliveryError("Missing CallMeBot credentials")
        if not text:
            raise DeliveryError("Cannot send an empty WhatsApp message")

        params = {
            "phone": re.sub(r"[^0-9+]", "", self.phone),
            "text": text,
            "apikey": self.api_key.strip(),
        }
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = await client.get(CALLMEBOT_URL, params=params)
            except httpx.HTTPError as e:
                raise DeliveryError(f"CallMeBot request failed: {e}", 502) from e
        body = resp.text or ""

        if resp.status_code >= 400:
            raise DeliveryError(
                f"CallMeBot responded with {resp.status_code}: {body or 'Unknown error'}",
                502,
            )
        if not re.search(r"message sent", body, re.IGNORECASE):
            raise DeliveryError(body.strip() or "CallMeBot did not confirm message delivery", 502)

        logger.debug("CallMeBot delivered message (key=%s)", mask_secret(self.api_key))
        return body.strip()
