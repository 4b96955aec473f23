"""均线类指标：SMA / EMA / WMA / VWMA。

约定
----
- 输入任意数值序列，输出等长 `np.ndarray`；
- 预热期与无效输入位置为 NaN（“未定义”），不会被静默置零；
- NaN/Inf 输入一律视为未定义。
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

ArrayLike = Sequence[float] | np.ndarray


def as_clean_array(values: ArrayLike) -> np.ndarray:
    """转为 float 数组，并把 Inf 统一替换为 NaN。"""
    arr = np.array(values, dtype=float, copy=True)
    if arr.ndim != 1:
        raise ValueError("indicator input must be 1-D")
    arr[~np.isfinite(arr)] = np.nan
    return arr


def check_period(period: int, name: str) -> int:
    period = int(period)
    if period <= 0:
        raise ValueError(f"{name} period must be > 0")
    return period


def sma(values: ArrayLike, period: int) -> np.ndarray:
    """简单移动平均；窗口内任一值未定义则该位置未定义。"""
    period = check_period(period, "SMA")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    for i in range(period - 1, len(arr)):
        window = arr[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.sum(window)) / period
    return out


def ema(values: ArrayLike, period: int) -> np.ndarray:
    """指数移动平均（skip-and-resume）。

    - 以前 `period` 个有效值的简单平均作为种子，种子落在第 `period` 个有效值的位置；
    - 之后按 `k = 2/(period+1)` 递推；
    - 中途遇到未定义输入：该位置输出未定义，但保留上一个 EMA，
      有效输入恢复后继续递推，而不是让 NaN 污染后续所有值。
    """
    period = check_period(period, "EMA")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    valid = np.flatnonzero(~np.isnan(arr))
    if len(valid) < period:
        return out

    seed_idx = int(valid[period - 1])
    prev = float(np.sum(arr[valid[:period]])) / period
    out[seed_idx] = prev
    k = 2.0 / (period + 1)
    for i in range(seed_idx + 1, len(arr)):
        v = arr[i]
        if np.isnan(v):
            continue
        # (v - prev) * k + prev：常数序列时严格保持不变
        prev = (v - prev) * k + prev
        out[i] = prev
    return out


def wma(values: ArrayLike, period: int) -> np.ndarray:
    """线性加权移动平均（最近的权重最大）。"""
    period = check_period(period, "WMA")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    weights = np.arange(1, period + 1, dtype=float)
    denom = float(weights.sum())
    for i in range(period - 1, len(arr)):
        window = arr[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.dot(window, weights)) / denom
    return out


def vwma(close: ArrayLike, volume: ArrayLike, period: int) -> np.ndarray:
    """成交量加权移动平均；窗口成交量为 0 时未定义。"""
    period = check_period(period, "VWMA")
    c = as_clean_array(close)
    v = as_clean_array(volume)
    out = np.full(c.shape, np.nan)
    for i in range(period - 1, len(c)):
        cw = c[i - period + 1 : i + 1]
        vw = v[i - period + 1 : i + 1]
        if np.isnan(cw).any() or np.isnan(vw).any():
            continue
        vol = float(np.sum(vw))
        if vol == 0:
            continue
        out[i] = float(np.dot(cw, vw)) / vol
    return out


def rolling_max(values: ArrayLike, period: int) -> np.ndarray:
    period = check_period(period, "rolling max")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    for i in range(period - 1, len(arr)):
        window = arr[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.max(window))
    return out


def rolling_min(values: ArrayLike, period: int) -> np.ndarray:
    period = check_period(period, "rolling min")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    for i in range(period - 1, len(arr)):
        window = arr[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.min(window))
    return out
