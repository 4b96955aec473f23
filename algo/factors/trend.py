"""趋势类指标：ADX / Parabolic SAR / SuperTrend / Ichimoku。"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np

from algo.factors.moving_average import ArrayLike, as_clean_array, check_period, ema, rolling_max, rolling_min
from algo.factors.volatility import atr as atr_series
from algo.factors.volatility import true_range


class ADXResult(NamedTuple):
    adx: np.ndarray
    plus_di: np.ndarray
    minus_di: np.ndarray


class SuperTrendResult(NamedTuple):
    line: np.ndarray
    direction: np.ndarray  # 1 = 上升趋势, -1 = 下降趋势


class IchimokuResult(NamedTuple):
    tenkan: np.ndarray
    kijun: np.ndarray
    senkou_a: np.ndarray
    senkou_b: np.ndarray
    chikou: np.ndarray


def adx(high: ArrayLike, low: ArrayLike, close: ArrayLike, period: int = 14) -> ADXResult:
    """平均趋向指数。+DM/-DM 与 TR 均用 EMA 平滑，ADX 为 DX 的 EMA。"""
    period = check_period(period, "ADX")
    h = as_clean_array(high)
    lo = as_clean_array(low)
    n = len(h)
    plus_dm = np.full(n, np.nan)
    minus_dm = np.full(n, np.nan)
    for i in range(1, n):
        up = h[i] - h[i - 1]
        down = lo[i - 1] - lo[i]
        if np.isnan(up) or np.isnan(down):
            continue
        plus_dm[i] = up if up > down and up > 0 else 0.0
        minus_dm[i] = down if down > up and down > 0 else 0.0

    tr_smooth = ema(true_range(h, lo, close), period)
    plus_smooth = ema(plus_dm, period)
    minus_smooth = ema(minus_dm, period)

    plus_di = np.full(n, np.nan)
    minus_di = np.full(n, np.nan)
    dx = np.full(n, np.nan)
    for i in range(n):
        tr_v = tr_smooth[i]
        if np.isnan(tr_v) or np.isnan(plus_smooth[i]) or np.isnan(minus_smooth[i]) or tr_v == 0:
            continue
        plus_di[i] = 100.0 * plus_smooth[i] / tr_v
        minus_di[i] = 100.0 * minus_smooth[i] / tr_v
        total = plus_di[i] + minus_di[i]
        dx[i] = 0.0 if total == 0 else 100.0 * abs(plus_di[i] - minus_di[i]) / total
    return ADXResult(adx=ema(dx, period), plus_di=plus_di, minus_di=minus_di)


def parabolic_sar(high: ArrayLike, low: ArrayLike, step: float = 0.02, max_step: float = 0.2) -> np.ndarray:
    """抛物线转向指标。首根 K 线未定义。"""
    h = as_clean_array(high)
    lo = as_clean_array(low)
    n = len(h)
    out = np.full(n, np.nan)
    if n < 2 or np.isnan(h[0]) or np.isnan(lo[0]):
        return out

    uptrend = not (h[1] < h[0] and lo[1] < lo[0])
    af = step
    ep = h[0] if uptrend else lo[0]
    sar = lo[0] if uptrend else h[0]
    for i in range(1, n):
        if np.isnan(h[i]) or np.isnan(lo[i]):
            continue
        sar = sar + af * (ep - sar)
        prev_lows = [lo[i - 1]] + ([lo[i - 2]] if i >= 2 else [])
        prev_highs = [h[i - 1]] + ([h[i - 2]] if i >= 2 else [])
        if uptrend:
            sar = min([sar] + [x for x in prev_lows if not np.isnan(x)])
            if lo[i] < sar:
                uptrend = False
                sar = ep
                ep = lo[i]
                af = step
            elif h[i] > ep:
                ep = h[i]
                af = min(af + step, max_step)
        else:
            sar = max([sar] + [x for x in prev_highs if not np.isnan(x)])
            if h[i] > sar:
                uptrend = True
                sar = ep
                ep = h[i]
                af = step
            elif lo[i] < ep:
                ep = lo[i]
                af = min(af + step, max_step)
        out[i] = sar
    return out


def supertrend(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    period: int = 10,
    multiplier: float = 3.0,
) -> SuperTrendResult:
    h = as_clean_array(high)
    lo = as_clean_array(low)
    c = as_clean_array(close)
    a = atr_series(h, lo, c, period)
    n = len(c)
    line = np.full(n, np.nan)
    direction = np.full(n, np.nan)

    final_upper = final_lower = None
    trend = 1
    for i in range(n):
        if np.isnan(a[i]) or np.isnan(c[i]):
            continue
        hl2 = (h[i] + lo[i]) / 2.0
        basic_upper = hl2 + multiplier * a[i]
        basic_lower = hl2 - multiplier * a[i]
        if final_upper is None or final_lower is None:
            final_upper, final_lower = basic_upper, basic_lower
            trend = 1 if c[i] >= hl2 else -1
        else:
            prev_close = c[i - 1]
            if basic_upper < final_upper or prev_close > final_upper:
                final_upper = basic_upper
            if basic_lower > final_lower or prev_close < final_lower:
                final_lower = basic_lower
            if trend == 1 and c[i] < final_lower:
                trend = -1
            elif trend == -1 and c[i] > final_upper:
                trend = 1
        line[i] = final_lower if trend == 1 else final_upper
        direction[i] = float(trend)
    return SuperTrendResult(line=line, direction=direction)


def ichimoku(
    high: ArrayLike,
    low: ArrayLike,
    close: ArrayLike,
    tenkan_period: int = 9,
    kijun_period: int = 26,
    senkou_b_period: int = 52,
    displacement: int = 26,
) -> IchimokuResult:
    """一目均衡表。

    senkou A/B 向前平移 `displacement`；chikou 是收盘价向后平移，
    即索引 i 处为 i+displacement 的收盘价，回测中不可作为入场依据。
    """
    h = as_clean_array(high)
    lo = as_clean_array(low)
    c = as_clean_array(close)
    n = len(c)
    tenkan = (rolling_max(h, tenkan_period) + rolling_min(lo, tenkan_period)) / 2.0
    kijun = (rolling_max(h, kijun_period) + rolling_min(lo, kijun_period)) / 2.0
    span_b = (rolling_max(h, senkou_b_period) + rolling_min(lo, senkou_b_period)) / 2.0

    senkou_a = np.full(n, np.nan)
    senkou_b = np.full(n, np.nan)
    chikou = np.full(n, np.nan)
    if displacement < n:
        senkou_a[displacement:] = ((tenkan + kijun) / 2.0)[: n - displacement]
        senkou_b[displacement:] = span_b[: n - displacement]
        chikou[: n - displacement] = c[displacement:]
    return IchimokuResult(tenkan=tenkan, kijun=kijun, senkou_a=senkou_a, senkou_b=senkou_b, chikou=chikou)
