"""综合情绪评分策略（Market Sentiment Trend Gauge）。

用平滑后的综合评分 TS 做阈值穿越：
- 空仓：TS 上穿 long_threshold 做多，下穿 short_threshold 做空；
- 持仓：多头 TS 下穿 exit_threshold 出场，空头上穿 exit_threshold 出场；
- |TS| > extreme_threshold 只记录日志，不拦截。
该策略族没有入场过滤器，filter_mode 不参与。
"""

from __future__ import annotations

import json

from algo.factors.composite import CompositeResult, CompositeWeights, composite_score
from algo.position.lifecycle import ExitReason, position_age_seconds, profit_pct
from algo.strategy.base import CandleSeries, require_candles, value_at
from shared.config.schema import CompositeSentimentConfig
from shared.models.models import PositionState, Side, Signal
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("strategy-composite")


def required_candles(cfg: CompositeSentimentConfig) -> int:
    return max(
        cfg.min_candles,
        cfg.trend_slow_ema + cfg.smoothing_period,
        cfg.bb_period + cfg.smoothing_period,
        cfg.rsi_period + cfg.smoothing_period + 1,
    )


def composite_for(series: CandleSeries, cfg: CompositeSentimentConfig) -> CompositeResult:
    params = {
        "w": [cfg.weight_momentum, cfg.weight_trend, cfg.weight_volatility, cfg.weight_relative],
        "rsi": cfg.rsi_period,
        "trend": [cfg.trend_fast_ema, cfg.trend_slow_ema],
        "bb": [cfg.bb_period, cfg.bb_std],
        "rs": cfg.relative_strength_period,
        "smooth": cfg.smoothing_period,
    }
    key = "composite:" + json.dumps(params, sort_keys=True)
    return series.cached(
        key,
        lambda: composite_score(
            series.high,
            series.low,
            series.close,
            weights=CompositeWeights(
                momentum=cfg.weight_momentum,
                trend=cfg.weight_trend,
                volatility=cfg.weight_volatility,
                relative_strength=cfg.weight_relative,
            ),
            benchmark=series.benchmark,
            rsi_period=cfg.rsi_period,
            trend_fast=cfg.trend_fast_ema,
            trend_slow=cfg.trend_slow_ema,
            bb_period=cfg.bb_period,
            bb_std=cfg.bb_std,
            rs_period=cfg.relative_strength_period,
            smoothing=cfg.smoothing_period,
        ),
    )


def _entry_confidence(score: float) -> float:
    return min(100.0, 50.0 + abs(score) / 2.0)


def evaluate_composite_sentiment(
    series: CandleSeries,
    index: int,
    cfg: CompositeSentimentConfig,
    position: PositionState,
) -> Signal:
    require_candles(index, required_candles(cfg))
    result = composite_for(series, cfg)
    curr = value_at(result.score, index, "composite_score")
    prev = value_at(result.score, index - 1, "composite_score")

    extreme = abs(curr) > cfg.extreme_threshold
    if extreme:
        _LOGGER.info("TS 进入极端区域：%.2f（阈值 %.0f）", curr, cfg.extreme_threshold)
    meta = {"score": curr, "extreme": extreme}

    if position.is_open:
        return _check_exit(series, index, cfg, position, prev, curr, meta)

    if prev <= cfg.long_threshold < curr:
        return Signal(
            Side.LONG.entry_signal,
            f"TS {curr:.2f} crossed above long threshold {cfg.long_threshold:g}",
            confidence=_entry_confidence(curr),
            metadata={**meta, "side": Side.LONG.value},
            **_levels(cfg, Side.LONG, float(series.close[index])),
        )
    if cfg.allow_short and prev >= cfg.short_threshold > curr:
        return Signal(
            Side.SHORT.entry_signal,
            f"TS {curr:.2f} crossed below short threshold {cfg.short_threshold:g}",
            confidence=_entry_confidence(curr),
            metadata={**meta, "side": Side.SHORT.value},
            **_levels(cfg, Side.SHORT, float(series.close[index])),
        )
    return Signal.hold(
        f"waiting for threshold cross (TS={curr:.2f}, need >{cfg.long_threshold:g} or <{cfg.short_threshold:g})",
        **meta,
    )


def _levels(cfg: CompositeSentimentConfig, side: Side, price: float) -> dict[str, float | None]:
    sign = 1.0 if side is Side.LONG else -1.0
    stop_loss = price * (1 - sign * cfg.stop_loss_pct / 100.0) if cfg.stop_loss_pct else None
    take_profit = price * (1 + sign * cfg.take_profit_pct / 100.0) if cfg.take_profit_pct else None
    return {"stop_loss": stop_loss, "take_profit": take_profit}


def _check_exit(
    series: CandleSeries,
    index: int,
    cfg: CompositeSentimentConfig,
    position: PositionState,
    prev: float,
    curr: float,
    meta: dict,
) -> Signal:
    side = position.side
    if side is None:
        raise ValueError("exit check requires an open position")
    exit_type = side.exit_signal
    now = series.candles[index].close_time
    price = value_at(series.close, index, "close")

    age = position_age_seconds(position, now)
    if cfg.max_position_time is not None and age >= cfg.max_position_time:
        return Signal(
            exit_type,
            f"time exit: held {age:.0f}s",
            confidence=70.0,
            metadata={**meta, "exit_reason": ExitReason.TIME_EXIT.value},
        )

    pnl_pct = profit_pct(side, position.entry_price, price)
    if cfg.stop_loss_pct and pnl_pct <= -cfg.stop_loss_pct:
        return Signal(
            exit_type,
            f"stop loss: {pnl_pct:.2f}%",
            confidence=90.0,
            metadata={**meta, "exit_reason": ExitReason.STOP_LOSS.value},
        )
    if cfg.take_profit_pct and pnl_pct >= cfg.take_profit_pct:
        return Signal(
            exit_type,
            f"take profit: {pnl_pct:.2f}%",
            confidence=95.0,
            metadata={**meta, "exit_reason": ExitReason.TAKE_PROFIT.value},
        )

    if side is Side.LONG and prev >= cfg.exit_threshold > curr:
        return Signal(
            exit_type,
            f"TS {curr:.2f} crossed below exit threshold {cfg.exit_threshold:g}",
            confidence=85.0,
            metadata={**meta, "exit_reason": ExitReason.REVERSAL.value},
        )
    if side is Side.SHORT and prev <= cfg.exit_threshold < curr:
        return Signal(
            exit_type,
            f"TS {curr:.2f} crossed above exit threshold {cfg.exit_threshold:g}",
            confidence=85.0,
            metadata={**meta, "exit_reason": ExitReason.REVERSAL.value},
        )
    return Signal.hold(f"holding {side.value}, TS={curr:.2f}", **meta)
