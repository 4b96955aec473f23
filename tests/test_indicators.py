import math

import numpy as np
import pytest

from algo.factors.composite import normalize_to_range, relative_strength
from algo.factors.momentum import macd, rsi, stochastic, williams_r
from algo.factors.moving_average import ema, sma, wma
from algo.factors.volatility import atr, bollinger_bands, true_range
from algo.factors.trend import adx
from algo.factors.volume import obv, vwap


def _nan_count(values) -> int:
    return int(np.isnan(values).sum())


def test_ema_constant_series_stays_constant():
    out = ema([5.0] * 10, 3)
    assert _nan_count(out) == 2
    assert all(v == 5.0 for v in out[2:])


def test_ema_seeds_with_sma_then_recurses():
    out = ema([1.0, 2.0, 3.0, 4.0, 5.0], 3)
    assert math.isnan(out[1])
    assert out[2] == 2.0
    assert out[3] == 3.0
    assert out[4] == 4.0


def test_ema_skips_undefined_input_and_resumes():
    out = ema([1.0, 2.0, 3.0, float("nan"), 5.0], 3)
    assert out[2] == 2.0
    assert math.isnan(out[3])
    # 恢复时从上一个有效 EMA 继续：(5 - 2) * 0.5 + 2
    assert out[4] == 3.5


def test_sma_and_wma_windows():
    s = sma([1.0, 2.0, 3.0, 4.0, 5.0], 3)
    assert _nan_count(s) == 2
    assert list(s[2:]) == [2.0, 3.0, 4.0]

    w = wma([1.0, 2.0, 3.0], 3)
    assert abs(w[2] - 14.0 / 6.0) < 1e-12


def test_inf_input_treated_as_undefined():
    out = sma([1.0, float("inf"), 3.0, 4.0], 2)
    assert math.isnan(out[1]) and math.isnan(out[2])
    assert out[3] == 3.5


def test_rsi_all_gains_is_100():
    out = rsi([float(i) for i in range(1, 21)], 14)
    assert _nan_count(out[:14]) == 14
    assert out[14] == 100.0
    assert all(v == 100.0 for v in out[14:])


def test_rsi_stays_within_bounds():
    rng = np.random.default_rng(7)
    prices = 100 + np.cumsum(rng.normal(0, 1, 300))
    out = rsi(prices, 14)
    valid = out[~np.isnan(out)]
    assert len(valid) == 300 - 14
    assert valid.min() >= 0.0
    assert valid.max() <= 100.0


def test_true_range_and_atr_on_constant_ranges():
    close = [10.0 + i for i in range(10)]
    high = [c + 1.0 for c in close]
    low = [c - 1.0 for c in close]
    tr = true_range(high, low, close)
    # 首根为 high-low，之后 |high - prev_close| = 2
    assert list(tr) == [2.0] * 10
    out = atr(high, low, close, 3)
    assert _nan_count(out) == 2
    assert all(abs(v - 2.0) < 1e-12 for v in out[2:])


def test_macd_requires_fast_below_slow():
    with pytest.raises(ValueError, match="fast"):
        macd([1.0] * 40, fast=26, slow=12)


def test_macd_histogram_is_line_minus_signal():
    prices = [100 + math.sin(i / 3) * 5 for i in range(80)]
    res = macd(prices, 12, 26, 9)
    i = 60
    assert abs(res.histogram[i] - (res.macd[i] - res.signal[i])) < 1e-12


def test_bollinger_bands_flat_series_collapse():
    bands = bollinger_bands([10.0] * 25, 20, 2.0)
    assert bands.upper[-1] == bands.middle[-1] == bands.lower[-1] == 10.0


def test_obv_accumulates_signed_volume():
    out = obv([10.0, 11.0, 10.5, 10.5, 12.0], [100.0, 50.0, 30.0, 20.0, 10.0])
    assert list(out) == [0.0, 50.0, 20.0, 20.0, 30.0]


def test_normalize_to_range_uses_history_only():
    out = normalize_to_range([1.0, 1.0, 3.0, 2.0])
    assert out[0] == 0.0 and out[1] == 0.0
    assert out[2] == 100.0
    # 截至 index 3 的区间为 [1, 3]
    assert out[3] == 0.0


def test_relative_strength_neutral_without_benchmark_or_same_series():
    closes = [100.0 + i for i in range(30)]
    assert list(relative_strength(closes, None, 14)) == [0.0] * 30
    same = relative_strength(closes, closes, 14)
    valid = same[~np.isnan(same)]
    assert len(valid) > 0
    assert all(v == 0.0 for v in valid)


def test_stochastic_flat_range_is_50():
    flat = [5.0] * 8
    res = stochastic(flat, flat, flat, k_period=3, k_smoothing=1, d_period=3)
    assert _nan_count(res.k) == 2
    assert res.k[-1] == 50.0
    assert res.d[-1] == 50.0


def test_williams_r_bounds():
    high = [2.0, 3.0, 4.0, 4.0]
    low = [1.0, 1.0, 1.0, 1.0]
    assert williams_r(high, low, [2.0, 3.0, 4.0, 4.0], 3)[-1] == 0.0
    assert williams_r(high, low, [2.0, 3.0, 4.0, 1.0], 3)[-1] == -100.0


def test_vwap_is_cumulative_and_undefined_without_volume():
    px = [10.0, 10.0, 20.0]
    out = vwap(px, px, px, [0.0, 1.0, 3.0])
    assert math.isnan(out[0])
    assert out[1] == 10.0
    assert out[2] == 17.5


def test_adx_on_steady_uptrend():
    n = 30
    high = [i + 1.0 for i in range(n)]
    low = [float(i) for i in range(n)]
    close = [i + 0.5 for i in range(n)]
    res = adx(high, low, close, 5)
    assert res.minus_di[-1] == 0.0
    assert res.plus_di[-1] > 0
    assert res.adx[-1] == pytest.approx(100.0)
