"""持仓生命周期：Flat -> Open(side) -> Flat，叠加部分平仓。

规则
----
- 只有这里的函数会修改 PositionState；
- 部分平仓不离开 Open 状态，每次追加一条 PartialClose 并按比例减少剩余仓位；
- 全部平仓只产生一条 Trade，覆盖从入场到最终出场的完整生命周期，
  profit 为扣除手续费后的净值（滑点由调用方体现在成交价上）。
"""

from __future__ import annotations

from dataclasses import fields
from datetime import datetime
from enum import Enum

from shared.models.models import PartialClose, PositionState, Side, Trade


class ExitReason(str, Enum):
    TIME_EXIT = "time exit"
    STOP_LOSS = "stop loss"
    TAKE_PROFIT = "take profit"
    TRAILING_STOP = "trailing stop"
    REVERSAL = "reversal"
    SIGNAL = "exit signal"
    END_OF_BACKTEST = "end of backtest"


def profit_pct(side: Side, entry_price: float, price: float) -> float:
    """浮动盈亏百分比；空头方向取 (entry-current)/entry。"""
    if entry_price == 0:
        return 0.0
    if side is Side.LONG:
        return (price - entry_price) / entry_price * 100.0
    return (entry_price - price) / entry_price * 100.0


def gross_pnl(side: Side, entry_price: float, exit_price: float, quantity: float) -> float:
    if side is Side.LONG:
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def position_age_seconds(position: PositionState, now: datetime) -> float:
    if not position.is_open or position.entry_time is None:
        return 0.0
    return (now - position.entry_time).total_seconds()


def open_position(
    position: PositionState,
    *,
    side: Side,
    price: float,
    time: datetime,
    size: float = 1.0,
    entry_fee: float = 0.0,
    stop_loss: float | None = None,
    take_profit: float | None = None,
    range_high: float | None = None,
    range_low: float | None = None,
) -> PositionState:
    """Flat -> Open。"""
    if position.is_open:
        raise ValueError("position already open")
    if size <= 0:
        raise ValueError("position size must be > 0")
    position.is_open = True
    position.side = side
    position.entry_price = float(price)
    position.entry_time = time
    position.size = float(size)
    position.initial_size = float(size)
    position.entry_fee = float(entry_fee)
    position.stop_loss = stop_loss
    position.take_profit = take_profit
    position.range_high = range_high
    position.range_low = range_low
    position.best_price = float(price)
    position.trail_distance = abs(float(price) - stop_loss) if stop_loss is not None else None
    position.trailing_active = False
    position.last_signal_time = time
    position.partial_closes = []
    return position


def due_partial_levels(position: PositionState, price: float, levels: list[float]) -> list[float]:
    """已达到但尚未执行的部分平仓档位（盈利百分比）。"""
    if not position.is_open or position.side is None:
        return []
    done = {p.level for p in position.partial_closes}
    current = profit_pct(position.side, position.entry_price, price)
    return [lv for lv in levels if lv not in done and current >= lv]


def apply_partial_close(
    position: PositionState,
    *,
    level: float,
    fraction: float,
    price: float,
    time: datetime,
    fee_rate: float = 0.0,
) -> PartialClose:
    """按初始仓位的 `fraction` 平掉一部分，仓位保持 Open。"""
    if not position.is_open or position.side is None:
        raise ValueError("cannot partially close a flat position")
    closed_size = min(position.initial_size * fraction, position.size)
    if closed_size <= 0 or closed_size >= position.size:
        raise ValueError("partial close must leave a remaining position")
    fee = closed_size * price * fee_rate
    profit = gross_pnl(position.side, position.entry_price, price, closed_size) - fee
    record = PartialClose(level=level, closed_size=closed_size, price=price, profit=profit, time=time)
    position.size -= closed_size
    position.partial_closes.append(record)
    return record


def close_position(
    position: PositionState,
    *,
    price: float,
    time: datetime,
    reason: str | ExitReason,
    fee_rate: float = 0.0,
) -> Trade:
    """Open -> Flat，返回覆盖完整生命周期的一条 Trade。"""
    if not position.is_open or position.side is None or position.entry_time is None:
        raise ValueError("cannot close a flat position")
    side = position.side
    remaining = position.size
    exit_fee = remaining * price * fee_rate
    final_leg = gross_pnl(side, position.entry_price, price, remaining) - exit_fee

    partial_profit = sum(p.profit for p in position.partial_closes)
    partial_fees = sum(p.closed_size * p.price * fee_rate for p in position.partial_closes)
    quantity = position.initial_size
    exit_notional = remaining * price + sum(p.closed_size * p.price for p in position.partial_closes)
    avg_exit = exit_notional / quantity if quantity else price
    profit = partial_profit + final_leg - position.entry_fee
    entry_notional = position.entry_price * quantity

    trade = Trade(
        type=side,
        entry_time=position.entry_time,
        entry_price=position.entry_price,
        exit_time=time,
        exit_price=avg_exit,
        quantity=quantity,
        profit=profit,
        exit_reason=getattr(reason, "value", reason),
        fees=position.entry_fee + partial_fees + exit_fee,
        profit_pct=profit / entry_notional * 100.0 if entry_notional else 0.0,
    )

    _reset(position)
    position.last_signal_time = time
    return trade


def _reset(position: PositionState) -> None:
    fresh = PositionState()
    for f in fields(PositionState):
        setattr(position, f.name, getattr(fresh, f.name))


def update_trailing_stop(position: PositionState, price: float, activation_ratio: float = 0.5) -> float | None:
    """移动止损：浮盈达到止盈距离的 activation_ratio 后激活，
    以原始止损距离跟随最优价格，止损只会朝有利方向移动。

    Returns
    -------
    float | None
        更新后的止损价；缺少 SL/TP 时不处理。
    """
    if not position.is_open or position.side is None:
        return None
    if position.stop_loss is None or position.take_profit is None or position.trail_distance is None:
        return position.stop_loss
    entry = position.entry_price
    stop_distance = position.trail_distance
    tp_distance = abs(position.take_profit - entry)
    if position.side is Side.LONG:
        position.best_price = max(position.best_price or price, price)
        favorable = position.best_price - entry
    else:
        position.best_price = min(position.best_price or price, price)
        favorable = entry - position.best_price

    if not position.trailing_active and favorable >= activation_ratio * tp_distance:
        position.trailing_active = True
    if position.trailing_active:
        if position.side is Side.LONG:
            position.stop_loss = max(position.stop_loss, position.best_price - stop_distance)
        else:
            position.stop_loss = min(position.stop_loss, position.best_price + stop_distance)
    return position.stop_loss


def level_exit(position: PositionState, high: float, low: float) -> tuple[ExitReason, float] | None:
    """K 线内的止损/止盈触发（按价位）。同一根 K 线两者都触及时按止损处理。"""
    if not position.is_open or position.side is None:
        return None
    sl, tp = position.stop_loss, position.take_profit
    stop_reason = ExitReason.TRAILING_STOP if position.trailing_active else ExitReason.STOP_LOSS
    if position.side is Side.LONG:
        if sl is not None and low <= sl:
            return stop_reason, sl
        if tp is not None and high >= tp:
            return ExitReason.TAKE_PROFIT, tp
    else:
        if sl is not None and high >= sl:
            return stop_reason, sl
        if tp is not None and low <= tp:
            return ExitReason.TAKE_PROFIT, tp
    return None
