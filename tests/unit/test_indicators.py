import math

import pandas as pd

from core.indicators import compute_sma


def test_compute_sma_excludes_current_candle():
    series = pd.Series([1, 2, 3, 4, 5])
    sma3 = compute_sma(series, 3)
    # value at row 3 averages rows 0..2 = 2; row 4 averages 2,3,4 = 3
    assert round(sma3.iloc[3], 2) == 2.00
    assert round(sma3.iloc[4], 2) == 3.00


def test_compute_sma_warmup_is_nan():
    sma3 = compute_sma(pd.Series([1, 2, 3, 4, 5]), 3)
    assert sma3.iloc[:3].isna().all()


def test_compute_sma_missing_close_poisons_window():
    series = pd.Series([1.0, None, 3.0, 4.0, 5.0, 6.0])
    sma2 = compute_sma(series, 2)
    # windows touching the missing close (rows 2 and 3) stay NaN
    assert math.isnan(sma2.iloc[2])
    assert math.isnan(sma2.iloc[3])
    assert round(sma2.iloc[4], 2) == 3.50


def test_compute_sma_non_positive_period():
    series = pd.Series([1, 2, 3])
    assert compute_sma(series, 0).isna().all()
    assert compute_sma(series, -2).isna().all()


CLOSES_2DP = [
    2091.37, 2089.12, 2093.58, 2090.41, 2094.76, 2092.03, 2088.69, 2095.21, 2091.94,
    2096.48, 2093.17, 2097.85, 2092.66, 2098.31, 2094.09, 2099.72, 2095.44, 2100.13,
    2096.87, 2101.56, 2097.28, 2102.91, 2098.35, 2103.64, 2099.07, 2104.19, 2100.52,
]


def _mean_oldest_first(values):
    total = 0.0
    for v in values:
        total += v
    return total / len(values)


def test_compute_sma_matches_direct_window_mean():
    sma9 = compute_sma(pd.Series(CLOSES_2DP), 9)
    for i in range(9, len(CLOSES_2DP)):
        assert sma9.iloc[i] == _mean_oldest_first(CLOSES_2DP[i - 9:i])
