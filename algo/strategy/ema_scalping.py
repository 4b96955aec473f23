"""EMA 交叉剥头皮策略。

Entry:
- 金叉：快线从 <= 慢线 变为 > 慢线（前一根 vs 当前根），且价格在慢线之上；死叉对称做空；
- 可选过滤器：RSI 区间、全局趋势（长周期 EMA）、波动率上限、成交量、低流动性时段；
  过滤姿态由 `filter_mode` 决定（默认 block）。

Exit（按优先级，先命中先返回）:
1. 持仓时间 >= max_position_time
2. ATR 止损：浮亏百分比 >= ATR * sl 倍数 / 价格
3. ATR 止盈：浮盈百分比 >= ATR * tp 倍数 / 价格
4. 反向交叉
"""

from __future__ import annotations

import math

from algo.position.lifecycle import ExitReason, position_age_seconds, profit_pct
from algo.strategy.base import CandleSeries, require_candles, value_at
from algo.strategy.filters import (
    FilterCheck,
    liquidity_window_check,
    resolve_filters,
    rsi_zone_check,
    trend_check,
    volatility_check,
    volume_check,
)
from shared.config.schema import EmaCrossoverScalpingConfig
from shared.models.models import PositionState, Side, Signal
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("strategy-ema-scalping")

CONFIDENCE_TIME_EXIT = 70.0
CONFIDENCE_STOP_LOSS = 90.0
CONFIDENCE_TAKE_PROFIT = 95.0
CONFIDENCE_REVERSAL = 85.0


def required_candles(cfg: EmaCrossoverScalpingConfig) -> int:
    periods = [cfg.fast_ema, cfg.slow_ema, cfg.atr_period + 1]
    if cfg.use_rsi_filter:
        periods.append(cfg.rsi_period + 1)
    if cfg.use_trend_filter:
        periods.append(cfg.trend_ema_period)
    if cfg.use_volatility_filter:
        periods.append(cfg.atr_period + cfg.volatility_lookback)
    if cfg.use_volume_filter:
        periods.append(cfg.volume_lookback + 1)
    return max(periods) + cfg.safety_margin


def evaluate_ema_scalping(
    series: CandleSeries,
    index: int,
    cfg: EmaCrossoverScalpingConfig,
    position: PositionState,
) -> Signal:
    require_candles(index, required_candles(cfg))

    fast = series.ema(cfg.fast_ema)
    slow = series.ema(cfg.slow_ema)
    price = value_at(series.close, index, "close")
    fast_now = value_at(fast, index, f"ema_{cfg.fast_ema}")
    fast_prev = value_at(fast, index - 1, f"ema_{cfg.fast_ema}")
    slow_now = value_at(slow, index, f"ema_{cfg.slow_ema}")
    slow_prev = value_at(slow, index - 1, f"ema_{cfg.slow_ema}")
    atr_now = value_at(series.atr(cfg.atr_period), index, f"atr_{cfg.atr_period}")

    bullish = fast_prev <= slow_prev and fast_now > slow_now
    bearish = fast_prev >= slow_prev and fast_now < slow_now

    if position.is_open:
        return _check_exit(series, index, cfg, position, price, atr_now, bullish, bearish)
    return _check_entry(series, index, cfg, price, slow_now, atr_now, bullish, bearish)


def _check_exit(
    series: CandleSeries,
    index: int,
    cfg: EmaCrossoverScalpingConfig,
    position: PositionState,
    price: float,
    atr_now: float,
    bullish: bool,
    bearish: bool,
) -> Signal:
    side = position.side
    if side is None:
        raise ValueError("exit check requires an open position")
    exit_type = side.exit_signal
    now = series.candles[index].close_time

    age = position_age_seconds(position, now)
    if cfg.max_position_time is not None and age >= cfg.max_position_time:
        return Signal(
            exit_type,
            f"time exit: held {age:.0f}s >= {cfg.max_position_time}s",
            confidence=CONFIDENCE_TIME_EXIT,
            metadata={"exit_reason": ExitReason.TIME_EXIT.value},
        )

    pnl_pct = profit_pct(side, position.entry_price, price)
    stop_pct = atr_now * cfg.atr_sl_multiplier / price * 100.0
    if pnl_pct <= -stop_pct:
        return Signal(
            exit_type,
            f"stop loss: {pnl_pct:.2f}% <= -{stop_pct:.2f}% (ATR {atr_now:.4f} x {cfg.atr_sl_multiplier:g})",
            confidence=CONFIDENCE_STOP_LOSS,
            metadata={"exit_reason": ExitReason.STOP_LOSS.value},
        )

    tp_pct = atr_now * cfg.atr_tp_multiplier / price * 100.0
    if pnl_pct >= tp_pct:
        return Signal(
            exit_type,
            f"take profit: {pnl_pct:.2f}% >= {tp_pct:.2f}% (ATR {atr_now:.4f} x {cfg.atr_tp_multiplier:g})",
            confidence=CONFIDENCE_TAKE_PROFIT,
            metadata={"exit_reason": ExitReason.TAKE_PROFIT.value},
        )

    if (side is Side.LONG and bearish) or (side is Side.SHORT and bullish):
        return Signal(
            exit_type,
            f"reversal: opposite EMA crossover while {side.value}",
            confidence=CONFIDENCE_REVERSAL,
            metadata={"exit_reason": ExitReason.REVERSAL.value},
        )

    return Signal.hold(f"holding {side.value}: P&L {pnl_pct:.2f}%")


def _check_entry(
    series: CandleSeries,
    index: int,
    cfg: EmaCrossoverScalpingConfig,
    price: float,
    slow_now: float,
    atr_now: float,
    bullish: bool,
    bearish: bool,
) -> Signal:
    if bullish and price > slow_now:
        side = Side.LONG
    elif bearish and price < slow_now and cfg.allow_short:
        side = Side.SHORT
    elif bullish or bearish:
        return Signal.hold("crossover without price confirmation")
    else:
        return Signal.hold("no crossover")

    checks: list[FilterCheck] = []
    if cfg.use_rsi_filter:
        rsi_now = value_at(series.rsi(cfg.rsi_period), index, f"rsi_{cfg.rsi_period}")
        checks.append(rsi_zone_check(rsi_now, side, cfg.rsi_long_threshold, cfg.rsi_short_threshold))
    if cfg.use_trend_filter:
        trend = value_at(series.ema(cfg.trend_ema_period), index, f"ema_{cfg.trend_ema_period}")
        checks.append(trend_check(price, trend, side))
    if cfg.use_volatility_filter:
        avg_atr = value_at(
            series.average_atr(cfg.atr_period, cfg.volatility_lookback), index - 1, "average_atr"
        )
        checks.append(
            volatility_check(
                atr_now,
                avg_atr,
                penalty_multiplier=cfg.volatility_penalty_multiplier,
                block_multiplier=cfg.volatility_block_multiplier,
            )
        )
    if cfg.use_volume_filter:
        volume = value_at(series.volume, index, "volume")
        avg_volume = value_at(series.average_volume(cfg.volume_lookback), index - 1, "average_volume")
        checks.append(volume_check(volume, avg_volume, cfg.volume_multiplier))
    if cfg.use_liquidity_window:
        checks.append(
            liquidity_window_check(
                series.candles[index].open_time,
                cfg.low_liquidity_start_hour,
                cfg.low_liquidity_end_hour,
            )
        )

    decision = resolve_filters(
        checks,
        mode=cfg.filter_mode,
        base_confidence=cfg.base_confidence,
        min_confidence=cfg.min_confidence,
    )
    if not decision.allowed:
        _LOGGER.info("EMA %s 交叉被过滤：%s", side.value, decision.reason)
        return Signal.hold(f"{side.value} crossover filtered: {decision.reason}", filtered=list(decision.failed))

    if side is Side.LONG:
        stop_loss = price - atr_now * cfg.atr_sl_multiplier
        take_profit = price + atr_now * cfg.atr_tp_multiplier
        label = "bullish"
    else:
        stop_loss = price + atr_now * cfg.atr_sl_multiplier
        take_profit = price - atr_now * cfg.atr_tp_multiplier
        label = "bearish"

    expire = math.ceil(cfg.max_position_time / 60) if cfg.max_position_time else None
    return Signal(
        side.entry_signal,
        f"{label} EMA crossover: EMA{cfg.fast_ema} vs EMA{cfg.slow_ema}, {decision.reason}",
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=decision.confidence,
        time_to_expire=expire,
        metadata={"side": side.value, "atr": atr_now},
    )
