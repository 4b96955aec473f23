"""成交量类指标：OBV / A/D Line / CMF / VWAP / Anchored VWAP / 均量。"""

from __future__ import annotations

import numpy as np

from algo.factors.moving_average import ArrayLike, as_clean_array, check_period, sma


def obv(close: ArrayLike, volume: ArrayLike) -> np.ndarray:
    """能量潮；首值为 0。未定义输入位置输出未定义，累计值保持。"""
    c = as_clean_array(close)
    v = as_clean_array(volume)
    n = len(c)
    out = np.full(n, np.nan)
    if n == 0:
        return out
    running = 0.0
    out[0] = running
    last_close = c[0]
    for i in range(1, n):
        if np.isnan(c[i]) or np.isnan(v[i]):
            continue
        if not np.isnan(last_close):
            if c[i] > last_close:
                running += v[i]
            elif c[i] < last_close:
                running -= v[i]
        last_close = c[i]
        out[i] = running
    return out


def _money_flow_multiplier(h: np.ndarray, lo: np.ndarray, c: np.ndarray) -> np.ndarray:
    rng = h - lo
    with np.errstate(divide="ignore", invalid="ignore"):
        mfm = ((c - lo) - (h - c)) / rng
    mfm[rng == 0] = 0.0
    return mfm


def ad_line(high: ArrayLike, low: ArrayLike, close: ArrayLike, volume: ArrayLike) -> np.ndarray:
    """累积/派发线。"""
    h, lo, c = as_clean_array(high), as_clean_array(low), as_clean_array(close)
    flow = _money_flow_multiplier(h, lo, c) * as_clean_array(volume)
    out = np.full(flow.shape, np.nan)
    running = 0.0
    for i, f in enumerate(flow):
        if np.isnan(f):
            continue
        running += f
        out[i] = running
    return out


def cmf(high: ArrayLike, low: ArrayLike, close: ArrayLike, volume: ArrayLike, period: int = 20) -> np.ndarray:
    """Chaikin Money Flow。"""
    period = check_period(period, "CMF")
    h, lo, c = as_clean_array(high), as_clean_array(low), as_clean_array(close)
    v = as_clean_array(volume)
    flow = _money_flow_multiplier(h, lo, c) * v
    out = np.full(flow.shape, np.nan)
    for i in range(period - 1, len(flow)):
        fw = flow[i - period + 1 : i + 1]
        vw = v[i - period + 1 : i + 1]
        if np.isnan(fw).any() or np.isnan(vw).any():
            continue
        vol = float(np.sum(vw))
        if vol == 0:
            continue
        out[i] = float(np.sum(fw)) / vol
    return out


def anchored_vwap(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    volume: ArrayLike,
    anchor_index: int = 0,
) -> np.ndarray:
    """从 anchor_index 开始累计的 VWAP（典型价 × 成交量）；锚点之前未定义。"""
    h, lo, c = as_clean_array(high), as_clean_array(low), as_clean_array(close)
    v = as_clean_array(volume)
    tp = (h + lo + c) / 3.0
    out = np.full(tp.shape, np.nan)
    pv_sum = 0.0
    vol_sum = 0.0
    for i in range(max(0, int(anchor_index)), len(tp)):
        if np.isnan(tp[i]) or np.isnan(v[i]):
            continue
        pv_sum += tp[i] * v[i]
        vol_sum += v[i]
        if vol_sum > 0:
            out[i] = pv_sum / vol_sum
    return out


def vwap(high: ArrayLike, low: ArrayLike, close: ArrayLike, volume: ArrayLike) -> np.ndarray:
    """累计 VWAP（从序列起点开始）。"""
    return anchored_vwap(high, low, close, volume, anchor_index=0)


def average_volume(volume: ArrayLike, period: int = 20) -> np.ndarray:
    return sma(volume, period)
