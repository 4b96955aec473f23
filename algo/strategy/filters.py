"""入场过滤器与两种过滤姿态。

- block：任一启用的过滤器不通过即抑制信号；
- confidence_penalty：未通过的过滤器从基础置信度中扣分，低于下限才抑制；
  标记为 hard 的检查（例如极端波动）在两种姿态下都直接抑制。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from shared.models.models import Side

PENALTY_COUNTER_TREND = 30.0
PENALTY_WEAK_ADX = 15.0
PENALTY_LOW_VOLUME = 15.0
PENALTY_ELEVATED_VOLATILITY = 10.0
PENALTY_LOW_LIQUIDITY = 10.0
PENALTY_RSI_ZONE = 10.0


@dataclass(frozen=True)
class FilterCheck:
    name: str
    passed: bool
    penalty: float = 0.0
    detail: str = ""
    hard: bool = False


@dataclass(frozen=True)
class FilterDecision:
    allowed: bool
    confidence: float
    reason: str
    failed: tuple[str, ...] = ()


def resolve_filters(
    checks: list[FilterCheck],
    *,
    mode: str,
    base_confidence: float,
    min_confidence: float,
) -> FilterDecision:
    failed = [c for c in checks if not c.passed]
    names = tuple(c.name for c in failed)
    hard = [c for c in failed if c.hard]
    if hard:
        return FilterDecision(False, 0.0, f"blocked by {hard[0].name}: {hard[0].detail}", names)

    if mode == "block":
        if failed:
            return FilterDecision(False, 0.0, f"blocked by {failed[0].name}: {failed[0].detail}", names)
        return FilterDecision(True, base_confidence, "all filters passed", names)

    confidence = base_confidence - sum(c.penalty for c in failed)
    confidence = max(0.0, min(100.0, confidence))
    if confidence < min_confidence:
        detail = ", ".join(f"{c.name}(-{c.penalty:g})" for c in failed)
        return FilterDecision(
            False,
            confidence,
            f"confidence {confidence:g} below floor {min_confidence:g}: {detail}",
            names,
        )
    reason = "all filters passed" if not failed else "penalized: " + ", ".join(names)
    return FilterDecision(True, confidence, reason, names)


def rsi_zone_check(rsi_value: float, side: Side, long_threshold: float, short_threshold: float) -> FilterCheck:
    """多头要求 RSI > long_threshold，空头要求 RSI < short_threshold。"""
    if side is Side.LONG:
        ok = rsi_value > long_threshold
        detail = f"RSI {rsi_value:.1f} <= {long_threshold:g}"
    else:
        ok = rsi_value < short_threshold
        detail = f"RSI {rsi_value:.1f} >= {short_threshold:g}"
    return FilterCheck("rsi_zone", ok, PENALTY_RSI_ZONE, "" if ok else detail)


def rsi_band_check(rsi_value: float, lower: float, upper: float) -> FilterCheck:
    ok = lower <= rsi_value <= upper
    return FilterCheck(
        "rsi_band",
        ok,
        PENALTY_RSI_ZONE,
        "" if ok else f"RSI {rsi_value:.1f} outside [{lower:g}, {upper:g}]",
    )


def trend_check(price: float, trend_ema: float, side: Side) -> FilterCheck:
    """全局趋势一致性：多头要求价格在长周期 EMA 之上，空头反之。"""
    ok = price > trend_ema if side is Side.LONG else price < trend_ema
    return FilterCheck(
        "global_trend",
        ok,
        PENALTY_COUNTER_TREND,
        "" if ok else f"price {price:.4f} against trend EMA {trend_ema:.4f}",
    )


def volatility_check(
    current_atr: float,
    average_atr: float,
    *,
    penalty_multiplier: float,
    block_multiplier: float,
) -> FilterCheck:
    """波动率上限：超过 block 倍数直接拦截，超过 penalty 倍数扣分。"""
    if average_atr <= 0:
        return FilterCheck("volatility", True)
    ratio = current_atr / average_atr
    if ratio > block_multiplier:
        return FilterCheck(
            "volatility",
            False,
            0.0,
            f"ATR {ratio:.2f}x average exceeds {block_multiplier:g}x",
            hard=True,
        )
    if ratio > penalty_multiplier:
        return FilterCheck(
            "volatility",
            False,
            PENALTY_ELEVATED_VOLATILITY,
            f"ATR {ratio:.2f}x average exceeds {penalty_multiplier:g}x",
        )
    return FilterCheck("volatility", True)


def volume_check(volume: float, average_volume: float, multiplier: float) -> FilterCheck:
    ok = average_volume > 0 and volume >= average_volume * multiplier
    return FilterCheck(
        "volume",
        ok,
        PENALTY_LOW_VOLUME,
        "" if ok else f"volume {volume:g} < {multiplier:g}x average {average_volume:g}",
    )


def adx_check(adx_value: float, threshold: float) -> FilterCheck:
    ok = adx_value >= threshold
    return FilterCheck(
        "adx",
        ok,
        PENALTY_WEAK_ADX,
        "" if ok else f"ADX {adx_value:.1f} < {threshold:g}",
    )


def in_low_liquidity_window(ts: datetime, start_hour: int = 22, end_hour: int = 6) -> bool:
    """UTC 小时是否落在低流动性窗口内（窗口可跨午夜）。"""
    hour = ts.hour if ts.tzinfo is None else ts.utctimetuple().tm_hour
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def liquidity_window_check(ts: datetime, start_hour: int = 22, end_hour: int = 6) -> FilterCheck:
    inside = in_low_liquidity_window(ts, start_hour, end_hour)
    return FilterCheck(
        "low_liquidity_window",
        not inside,
        PENALTY_LOW_LIQUIDITY,
        f"{ts.isoformat()} inside {start_hour:02d}:00-{end_hour:02d}:00 UTC" if inside else "",
    )
