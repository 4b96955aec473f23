"""通用条件树策略。

条件按 order_type 分成 buy/sell 两组：
- 无 group_id 的条件之间为 AND；
- 同一 group 内按 group_operator（AND/OR）组合；
- 各组结果之间为 AND。
指标值缺失（预热期、NaN）的条件一律判为不满足，避免产生假信号。

持仓出场顺序：止损 %、止盈 %、移动止损 %，最后是反向条件（多头看 sell，空头看 buy）。
"""

from __future__ import annotations

import math
from typing import Iterable

import numpy as np

from algo.position.lifecycle import ExitReason, position_age_seconds, profit_pct
from algo.strategy.base import CandleSeries, require_candles
from shared.config.schema import Condition, ConditionTreeConfig, IndicatorRef
from shared.models.models import PositionState, Side, Signal
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("strategy-condition-tree")

EQUALS_TOLERANCE = 0.01


def required_candles(cfg: ConditionTreeConfig) -> int:
    return max(2, cfg.min_candles)


def indicator_values(series: CandleSeries, ref: IndicatorRef) -> np.ndarray:
    if ref.type == "price":
        return series.price(str(ref.params.get("source", "close")))
    return series.factor(ref.type, ref.params, ref.component)


def _read(values: np.ndarray, index: int) -> float | None:
    if index < 0 or index >= len(values):
        return None
    v = float(values[index])
    return v if math.isfinite(v) else None


def evaluate_condition(series: CandleSeries, index: int, cond: Condition) -> bool:
    """单个条件在 index 处是否成立。"""
    values = indicator_values(series, cond.indicator)
    curr = _read(values, index)
    if curr is None:
        _LOGGER.debug("条件指标 %s 在 %d 处无值，视为不满足", cond.indicator.type, index)
        return False
    prev = _read(values, index - 1)

    compare = None
    if cond.compare_indicator is not None:
        compare = indicator_values(series, cond.compare_indicator)

    op = cond.operator
    if op == "indicator_comparison":
        other = _read(compare, index)
        return other is not None and curr > other

    if op in ("breakout_above", "breakout_below"):
        lookback = cond.lookback_bars
        if index < lookback:
            return False
        if op == "breakout_above":
            window = series.high[index - lookback:index]
            return bool(np.all(np.isfinite(window))) and curr > float(window.max())
        window = series.low[index - lookback:index]
        return bool(np.all(np.isfinite(window))) and curr < float(window.min())

    if op in ("crosses_above", "crosses_below"):
        if prev is None:
            return False
        if compare is not None:
            ref_prev, ref_curr = _read(compare, index - 1), _read(compare, index)
        else:
            ref_prev = ref_curr = cond.value
        if ref_prev is None or ref_curr is None:
            return False
        if op == "crosses_above":
            return prev <= ref_prev and curr > ref_curr
        return prev >= ref_prev and curr < ref_curr

    # 其余按阈值比较；未给 value 时和 compare_indicator 比较
    target = cond.value if cond.value is not None else _read(compare, index)
    if target is None:
        return False
    if op == "greater_than":
        return curr > target
    if op == "less_than":
        return curr < target
    if op == "equals":
        return abs(curr - target) < EQUALS_TOLERANCE
    if op == "between":
        return cond.value2 is not None and cond.value <= curr <= cond.value2
    raise ValueError(f"Unsupported condition operator: {op}")


def evaluate_conditions(
    series: CandleSeries,
    index: int,
    cfg: ConditionTreeConfig,
    order_type: str,
) -> bool:
    """按分组规则组合同一 order_type 的条件；没有条件时返回 False。"""
    relevant = [c for c in cfg.conditions if c.order_type == order_type]
    if not relevant:
        return False

    operators = {g.id: g.group_operator for g in cfg.groups}
    ungrouped: list[Condition] = []
    grouped: dict[str, list[Condition]] = {}
    for cond in relevant:
        if cond.group_id is None:
            ungrouped.append(cond)
        else:
            grouped.setdefault(cond.group_id, []).append(cond)

    def _results(conds: Iterable[Condition]) -> list[bool]:
        return [evaluate_condition(series, index, c) for c in conds]

    if ungrouped and not all(_results(ungrouped)):
        return False
    for group_id, conds in grouped.items():
        results = _results(conds)
        ok = any(results) if operators.get(group_id, "AND") == "OR" else all(results)
        if not ok:
            return False
    return True


def evaluate_condition_tree(
    series: CandleSeries,
    index: int,
    cfg: ConditionTreeConfig,
    position: PositionState,
) -> Signal:
    require_candles(index, required_candles(cfg))
    price = float(series.close[index])
    if not math.isfinite(price):
        return Signal.hold("close price undefined")

    if position.is_open:
        return _check_exit(series, index, cfg, position, price)

    if evaluate_conditions(series, index, cfg, "buy"):
        return _entry(cfg, Side.LONG, price, "buy conditions met")
    if cfg.allow_short and evaluate_conditions(series, index, cfg, "sell"):
        return _entry(cfg, Side.SHORT, price, "sell conditions met")
    return Signal.hold("entry conditions not met")


def _entry(cfg: ConditionTreeConfig, side: Side, price: float, reason: str) -> Signal:
    sign = 1.0 if side is Side.LONG else -1.0
    stop_loss = price * (1 - sign * cfg.stop_loss_pct / 100.0) if cfg.stop_loss_pct else None
    take_profit = price * (1 + sign * cfg.take_profit_pct / 100.0) if cfg.take_profit_pct else None
    return Signal(
        side.entry_signal,
        reason,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=cfg.base_confidence,
        metadata={"side": side.value},
    )


def _best_price_since_entry(series: CandleSeries, index: int, position: PositionState) -> float | None:
    """持仓以来的最有利价格（多头取最高价，空头取最低价）。"""
    if position.entry_time is None:
        return None
    start = index
    while start > 0 and series.candles[start - 1].close_time > position.entry_time:
        start -= 1
    if position.side is Side.LONG:
        window = series.high[start:index + 1]
        best = float(np.nanmax(window)) if np.isfinite(window).any() else None
        return max(best, position.entry_price) if best is not None else position.entry_price
    window = series.low[start:index + 1]
    best = float(np.nanmin(window)) if np.isfinite(window).any() else None
    return min(best, position.entry_price) if best is not None else position.entry_price


def _check_exit(
    series: CandleSeries,
    index: int,
    cfg: ConditionTreeConfig,
    position: PositionState,
    price: float,
) -> Signal:
    side = position.side
    if side is None:
        raise ValueError("exit check requires an open position")
    exit_type = side.exit_signal

    age = position_age_seconds(position, series.candles[index].close_time)
    if cfg.max_position_time is not None and age >= cfg.max_position_time:
        return Signal(exit_type, f"time exit: held {age:.0f}s", confidence=70.0,
                      metadata={"exit_reason": ExitReason.TIME_EXIT.value})

    pnl_pct = profit_pct(side, position.entry_price, price)
    if cfg.stop_loss_pct and pnl_pct <= -cfg.stop_loss_pct:
        return Signal(exit_type, f"stop loss: {pnl_pct:.2f}%", confidence=90.0,
                      metadata={"exit_reason": ExitReason.STOP_LOSS.value})
    if cfg.take_profit_pct and pnl_pct >= cfg.take_profit_pct:
        return Signal(exit_type, f"take profit: {pnl_pct:.2f}%", confidence=95.0,
                      metadata={"exit_reason": ExitReason.TAKE_PROFIT.value})

    if cfg.trailing_stop_pct:
        best = _best_price_since_entry(series, index, position)
        if best is not None:
            drawback = profit_pct(side, best, price)
            if drawback <= -cfg.trailing_stop_pct:
                return Signal(
                    exit_type,
                    f"trailing stop: {abs(drawback):.2f}% off best {best:.4f}",
                    confidence=90.0,
                    metadata={"exit_reason": ExitReason.TRAILING_STOP.value},
                )

    opposite = "sell" if side is Side.LONG else "buy"
    if evaluate_conditions(series, index, cfg, opposite):
        return Signal(exit_type, f"{opposite} conditions met", confidence=cfg.base_confidence,
                      metadata={"exit_reason": ExitReason.SIGNAL.value})
    return Signal.hold(f"holding {side.value}: P&L {pnl_pct:.2f}%")
