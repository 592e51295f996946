"""Logging setup shared by every service module.

Console output uses the pipe-separated format; the ``activity`` logger
additionally appends to ``<log_dir>/charts.log`` (fetches, alert sends,
poll errors and retry scheduling).
"""
from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
ACTIVITY_LOG_FILE = "charts.log"

activity = logging.getLogger("activity")


def mask_secret(value: Optional[str]) -> Optional[str]:
    return f"...{value[-4:]}" if value and len(value) >= 4 else None


def configure_logging(level: str = "INFO", log_dir: Optional[str] = "logs") -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_signal_alert", False) for h in root.handlers):
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter(LOG_FORMAT))
        h._signal_alert = True  # type: ignore[attr-defined]
        root.addHandler(h)
    root.setLevel(level.upper())

    if log_dir and not any(isinstance(h, logging.FileHandler) for h in activity.handlers):
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(log_dir, ACTIVITY_LOG_FILE), encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        activity.addHandler(fh)
    activity.setLevel(logging.INFO)
