"""综合情绪/趋势评分（MSTG 组件）。

各分量归一化到 [-100, 100] 后按权重合成，再做一次短周期 EMA 平滑：
原始合成分数噪声太大，直接拿来做阈值穿越会频繁误触发，因此平滑是必选步骤。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

import numpy as np

from algo.factors.moving_average import ArrayLike, as_clean_array, check_period, ema
from algo.factors.momentum import rsi
from algo.factors.volatility import bollinger_bands


class CompositeResult(NamedTuple):
    score: np.ndarray
    raw: np.ndarray
    momentum: np.ndarray
    trend: np.ndarray
    volatility: np.ndarray
    relative_strength: np.ndarray


@dataclass(frozen=True)
class CompositeWeights:
    momentum: float = 0.25
    trend: float = 0.35
    volatility: float = 0.20
    relative_strength: float = 0.20


def normalize_rsi(rsi_values: ArrayLike) -> np.ndarray:
    """RSI [0,100] -> [-100,100]。"""
    return (as_clean_array(rsi_values) - 50.0) * 2.0


def normalize_to_range(values: ArrayLike, lower: float = -100.0, upper: float = 100.0) -> np.ndarray:
    """按“截至当前”的最小/最大值线性映射到 [lower, upper]。

    只使用历史极值（expanding），避免回测时引入未来信息；极值相等时取区间中点。
    """
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    lo = hi = None
    mid = (lower + upper) / 2.0
    for i, v in enumerate(arr):
        if np.isnan(v):
            continue
        lo = v if lo is None else min(lo, v)
        hi = v if hi is None else max(hi, v)
        if hi == lo:
            out[i] = mid
        else:
            out[i] = lower + (v - lo) / (hi - lo) * (upper - lower)
    return out


def trend_score(close: ArrayLike, fast: int = 10, slow: int = 21) -> np.ndarray:
    """EMA(fast) - EMA(slow) 归一化。"""
    c = as_clean_array(close)
    return normalize_to_range(ema(c, fast) - ema(c, slow))


def bollinger_position(close: ArrayLike, period: int = 20, std_dev: float = 2.0) -> np.ndarray:
    """价格在布林带中的位置，截断到 [0,1]；带宽为 0 时 0.5。"""
    c = as_clean_array(close)
    bands = bollinger_bands(c, period, std_dev)
    out = np.full(c.shape, np.nan)
    for i in range(len(c)):
        width = bands.upper[i] - bands.lower[i]
        if np.isnan(width) or np.isnan(c[i]):
            continue
        if width == 0:
            out[i] = 0.5
            continue
        out[i] = min(1.0, max(0.0, (c[i] - bands.lower[i]) / width))
    return out


def relative_strength(close: ArrayLike, benchmark: ArrayLike | None, period: int = 14) -> np.ndarray:
    """相对基准的强弱：(资产收益 - 基准收益) * 100，再归一化。

    无基准时所有位置为 0（中性）；资产与基准相同时也为 0。
    """
    period = check_period(period, "relative strength")
    c = as_clean_array(close)
    if benchmark is None:
        return np.zeros(c.shape)
    b = as_clean_array(benchmark)
    if len(b) != len(c):
        raise ValueError("benchmark series must align with asset series")
    diff = np.full(c.shape, np.nan)
    for i in range(period, len(c)):
        c0, b0 = c[i - period], b[i - period]
        if np.isnan(c0) or np.isnan(b0) or np.isnan(c[i]) or np.isnan(b[i]) or c0 == 0 or b0 == 0:
            continue
        diff[i] = ((c[i] / c0 - 1.0) - (b[i] / b0 - 1.0)) * 100.0
    return normalize_to_range(diff)


def composite_score(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    *,
    weights: CompositeWeights = CompositeWeights(),
    benchmark: ArrayLike | None = None,
    rsi_period: int = 14,
    trend_fast: int = 10,
    trend_slow: int = 21,
    bb_period: int = 20,
    bb_std: float = 2.0,
    rs_period: int = 14,
    smoothing: int = 5,
) -> CompositeResult:
    """综合评分 TS。

    缺失分量按中性处理（动量/趋势/相对强弱取 0，布林位置取 0.5 即映射后的 0）；
    只有全部分量都缺失时该位置才未定义。
    """
    c = as_clean_array(close)
    m = normalize_rsi(rsi(c, rsi_period))
    t = trend_score(c, trend_fast, trend_slow)
    v = bollinger_position(c, bb_period, bb_std)
    r = relative_strength(c, benchmark, rs_period)

    raw = np.full(c.shape, np.nan)
    for i in range(len(c)):
        parts = (m[i], t[i], v[i], r[i])
        if all(np.isnan(p) for p in parts):
            continue
        mi = 0.0 if np.isnan(m[i]) else m[i]
        ti = 0.0 if np.isnan(t[i]) else t[i]
        vi = 0.5 if np.isnan(v[i]) else v[i]
        ri = 0.0 if np.isnan(r[i]) else r[i]
        raw[i] = (
            weights.momentum * mi
            + weights.trend * ti
            + weights.volatility * (vi * 200.0 - 100.0)
            + weights.relative_strength * ri
        )
    return CompositeResult(
        score=ema(raw, smoothing),
        raw=raw,
        momentum=m,
        trend=t,
        volatility=v,
        relative_strength=r,
    )
