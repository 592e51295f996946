"""Moving-average helpers built on pandas.

The SMA used for candle classification trails the candle it is attached
to: the value at row ``i`` is the mean of the ``period`` closes *before*
row ``i``, so a candle is always compared against an average it did not
contribute to.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def _window_mean(window) -> float:
    total = 0.0
    for value in window:
        total += value
    return total / len(window)


def compute_sma(close: pd.Series, period: int) -> pd.Series:
    """
    Trailing simple moving average of the previous ``period`` closes.
    Rows with fewer than ``period`` predecessors, or whose window holds a
    missing close, stay NaN.  A non-positive period yields all NaN.
    """
    close = pd.to_numeric(close, errors="coerce").astype(float)
    if period is None or period <= 0:
        return pd.Series(np.nan, index=close.index, dtype=float)
    close = close.where(np.isfinite(close))
    # row i is sum(closes[i-period:i]) / period, added oldest first
    return close.shift(1).rolling(window=period, min_periods=period).apply(
        _window_mean, raw=True
    )
