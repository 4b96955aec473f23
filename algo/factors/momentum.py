"""动量/震荡类指标：RSI、MACD、Stochastic、StochRSI、CCI、Williams %R、MFI、Momentum、ROC、KDJ。"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np

from algo.factors.moving_average import (
    ArrayLike,
    as_clean_array,
    check_period,
    ema,
    rolling_max,
    rolling_min,
    sma,
)


class MACDResult(NamedTuple):
    macd: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray


class StochasticResult(NamedTuple):
    k: np.ndarray
    d: np.ndarray


class KDJResult(NamedTuple):
    k: np.ndarray
    d: np.ndarray
    j: np.ndarray


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(values: ArrayLike, period: int = 14) -> np.ndarray:
    """RSI（Wilder 平滑）。

    第一个值为前 `period` 个涨跌幅的简单平均，之后 `(prev*(period-1)+cur)/period`；
    平均跌幅为 0 时取 100。无 NaN 时第一个有效值位于索引 `period`。
    """
    period = check_period(period, "RSI")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)

    avg_gain: float | None = None
    avg_loss = 0.0
    seed_gains: list[float] = []
    seed_losses: list[float] = []
    for i in range(1, len(arr)):
        delta = arr[i] - arr[i - 1]
        if np.isnan(delta):
            continue
        gain = max(delta, 0.0)
        loss = max(-delta, 0.0)
        if avg_gain is None:
            seed_gains.append(gain)
            seed_losses.append(loss)
            if len(seed_gains) == period:
                avg_gain = sum(seed_gains) / period
                avg_loss = sum(seed_losses) / period
                out[i] = _rsi_value(avg_gain, avg_loss)
            continue
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def macd(values: ArrayLike, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD；signal 为 MACD 线的 EMA（跳过预热期的未定义值）。"""
    if int(fast) >= int(slow):
        raise ValueError("MACD fast period must be < slow period")
    arr = as_clean_array(values)
    line = ema(arr, fast) - ema(arr, slow)
    sig = ema(line, signal)
    return MACDResult(macd=line, signal=sig, histogram=line - sig)


def stochastic(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    k_period: int = 14,
    k_smoothing: int = 3,
    d_period: int = 3,
) -> StochasticResult:
    """随机指标；最高价等于最低价时原始 %K 取 50。"""
    k_period = check_period(k_period, "Stochastic")
    c = as_clean_array(close)
    hh = rolling_max(high, k_period)
    ll = rolling_min(low, k_period)
    raw = np.full(c.shape, np.nan)
    for i in range(len(c)):
        if np.isnan(hh[i]) or np.isnan(ll[i]) or np.isnan(c[i]):
            continue
        rng = hh[i] - ll[i]
        raw[i] = 50.0 if rng == 0 else (c[i] - ll[i]) / rng * 100.0
    k = sma(raw, k_smoothing) if k_smoothing > 1 else raw
    d = sma(k, d_period)
    return StochasticResult(k=k, d=d)


def stoch_rsi(
    values: ArrayLike,
    rsi_period: int = 14,
    stoch_period: int = 14,
    k_smoothing: int = 3,
    d_period: int = 3,
) -> StochasticResult:
    r = rsi(values, rsi_period)
    hi = rolling_max(r, stoch_period)
    lo = rolling_min(r, stoch_period)
    raw = np.full(r.shape, np.nan)
    for i in range(len(r)):
        if np.isnan(hi[i]) or np.isnan(lo[i]):
            continue
        rng = hi[i] - lo[i]
        raw[i] = 50.0 if rng == 0 else (r[i] - lo[i]) / rng * 100.0
    k = sma(raw, k_smoothing) if k_smoothing > 1 else raw
    return StochasticResult(k=k, d=sma(k, d_period))


def cci(high: ArrayLike, low: ArrayLike, close: ArrayLike, period: int = 20) -> np.ndarray:
    """CCI = (TP - SMA(TP)) / (0.015 * 平均绝对偏差)；偏差为 0 时取 0。"""
    period = check_period(period, "CCI")
    tp = (as_clean_array(high) + as_clean_array(low) + as_clean_array(close)) / 3.0
    mean_tp = sma(tp, period)
    out = np.full(tp.shape, np.nan)
    for i in range(period - 1, len(tp)):
        if np.isnan(mean_tp[i]):
            continue
        window = tp[i - period + 1 : i + 1]
        md = float(np.mean(np.abs(window - mean_tp[i])))
        out[i] = 0.0 if md == 0 else (tp[i] - mean_tp[i]) / (0.015 * md)
    return out


def williams_r(high: ArrayLike, low: ArrayLike, close: ArrayLike, period: int = 14) -> np.ndarray:
    """Williams %R，范围 [-100, 0]；区间为 0 时取 -50。"""
    c = as_clean_array(close)
    hh = rolling_max(high, period)
    ll = rolling_min(low, period)
    out = np.full(c.shape, np.nan)
    for i in range(len(c)):
        if np.isnan(hh[i]) or np.isnan(ll[i]) or np.isnan(c[i]):
            continue
        rng = hh[i] - ll[i]
        out[i] = -50.0 if rng == 0 else (hh[i] - c[i]) / rng * -100.0
    return out


def mfi(high: ArrayLike, low: ArrayLike, close: ArrayLike, volume: ArrayLike, period: int = 14) -> np.ndarray:
    """资金流量指数（Money Flow Index）。"""
    period = check_period(period, "MFI")
    tp = (as_clean_array(high) + as_clean_array(low) + as_clean_array(close)) / 3.0
    flow = tp * as_clean_array(volume)
    pos = np.full(tp.shape, np.nan)
    neg = np.full(tp.shape, np.nan)
    for i in range(1, len(tp)):
        if np.isnan(tp[i]) or np.isnan(tp[i - 1]) or np.isnan(flow[i]):
            continue
        pos[i] = flow[i] if tp[i] > tp[i - 1] else 0.0
        neg[i] = flow[i] if tp[i] < tp[i - 1] else 0.0
    out = np.full(tp.shape, np.nan)
    for i in range(period, len(tp)):
        p = pos[i - period + 1 : i + 1]
        n = neg[i - period + 1 : i + 1]
        if np.isnan(p).any() or np.isnan(n).any():
            continue
        neg_sum = float(np.sum(n))
        if neg_sum == 0:
            out[i] = 100.0
            continue
        ratio = float(np.sum(p)) / neg_sum
        out[i] = 100.0 - 100.0 / (1.0 + ratio)
    return out


def momentum(values: ArrayLike, period: int = 10) -> np.ndarray:
    period = check_period(period, "Momentum")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    out[period:] = arr[period:] - arr[:-period]
    return out


def roc(values: ArrayLike, period: int = 10) -> np.ndarray:
    """变化率（百分比）；基准价为 0 时未定义。"""
    period = check_period(period, "ROC")
    arr = as_clean_array(values)
    out = np.full(arr.shape, np.nan)
    for i in range(period, len(arr)):
        base = arr[i - period]
        if np.isnan(base) or np.isnan(arr[i]) or base == 0:
            continue
        out[i] = (arr[i] - base) / base * 100.0
    return out


def kdj(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    period: int = 9,
    k_smoothing: int = 3,
    d_smoothing: int = 3,
) -> KDJResult:
    """KDJ：K、D 以 50 为初值做 1/N 平滑，J = 3K - 2D。"""
    c = as_clean_array(close)
    hh = rolling_max(high, period)
    ll = rolling_min(low, period)
    k = np.full(c.shape, np.nan)
    d = np.full(c.shape, np.nan)
    prev_k = prev_d = 50.0
    for i in range(len(c)):
        if np.isnan(hh[i]) or np.isnan(ll[i]) or np.isnan(c[i]):
            continue
        rng = hh[i] - ll[i]
        rsv = 50.0 if rng == 0 else (c[i] - ll[i]) / rng * 100.0
        prev_k = (prev_k * (k_smoothing - 1) + rsv) / k_smoothing
        prev_d = (prev_d * (d_smoothing - 1) + prev_k) / d_smoothing
        k[i] = prev_k
        d[i] = prev_d
    return KDJResult(k=k, d=d, j=3.0 * k - 2.0 * d)
