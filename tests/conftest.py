import os
import sys

import pytest

# add signal_alert_py to sys.path for tests
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../services/signal_alert_py")))

# Ensure tests never pick up real provider credentials
os.environ["TWELVEDATA_API_KEY"] = ""
os.environ["CALLMEBOT_PHONE"] = ""
os.environ["CALLMEBOT_API_KEY"] = ""

from core.config import Settings  # noqa: E402


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        twelvedata_api_key="test-key-1234",
        callmebot_phone="+1 (555) 010-0000",
        callmebot_api_key="cmb-key",
        log_dir="",
    )


def _make_bars(closes, spread=0.5):
    # open sits ``spread`` below the close, range is close +/- 1
    return [
        {
            "time": f"2024-05-01 {i:02d}:00:00.000",
            "open": close - spread,
            "high": close + 1,
            "low": close - 1,
            "close": close,
            "volume": 100.0,
        }
        for i, close in enumerate(closes)
    ]


@pytest.fixture()
def make_bars():
    return _make_bars
