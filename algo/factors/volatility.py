"""波动率指标：True Range / ATR / Bollinger Bands。"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np

from algo.factors.moving_average import ArrayLike, as_clean_array, check_period, ema, sma


class Bands(NamedTuple):
    upper: np.ndarray
    middle: np.ndarray
    lower: np.ndarray


def true_range(high: ArrayLike, low: ArrayLike, close: ArrayLike) -> np.ndarray:
    """真实波幅：max(high-low, |high-prevClose|, |low-prevClose|)，首根为 high-low。"""
    h = as_clean_array(high)
    lo = as_clean_array(low)
    c = as_clean_array(close)
    out = h - lo
    for i in range(1, len(h)):
        pc = c[i - 1]
        if np.isnan(pc) or np.isnan(out[i]):
            continue
        out[i] = max(out[i], abs(h[i] - pc), abs(lo[i] - pc))
    return out


def atr(high: ArrayLike, low: ArrayLike, close: ArrayLike, period: int = 14) -> np.ndarray:
    """平均真实波幅（True Range 的 EMA）。"""
    period = check_period(period, "ATR")
    return ema(true_range(high, low, close), period)


def rolling_pstdev(values: ArrayLike, period: int) -> np.ndarray:
    """滚动总体标准差（除以 period，而非 period-1）。"""
    period = check_period(period, "stdev")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    for i in range(period - 1, len(arr)):
        window = arr[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.std(window, ddof=0))
    return out


def bollinger_bands(values: ArrayLike, period: int = 20, std_dev: float = 2.0) -> Bands:
    period = check_period(period, "Bollinger")
    middle = sma(values, period)
    sd = rolling_pstdev(values, period)
    return Bands(upper=middle + std_dev * sd, middle=middle, lower=middle - std_dev * sd)


def percent_b(values: ArrayLike, period: int = 20, std_dev: float = 2.0) -> np.ndarray:
    """%B：价格在布林带中的相对位置；带宽为 0 时取 0.5。"""
    arr = as_clean_array(values)
    bands = bollinger_bands(arr, period, std_dev)
    width = bands.upper - bands.lower
    out = np.full(arr.shape, np.nan)
    for i in range(len(arr)):
        if np.isnan(width[i]) or np.isnan(arr[i]):
            continue
        out[i] = 0.5 if width[i] == 0 else (arr[i] - bands.lower[i]) / width[i]
    return out


def bandwidth(values: ArrayLike, period: int = 20, std_dev: float = 2.0) -> np.ndarray:
    """布林带宽度（百分比，相对中轨）。"""
    bands = bollinger_bands(values, period, std_dev)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (bands.upper - bands.lower) / bands.middle * 100.0
    out[~np.isfinite(out)] = np.nan
    return out
