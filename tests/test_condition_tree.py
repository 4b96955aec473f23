from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from algo.position.lifecycle import ExitReason, open_position
from algo.strategy.base import CandleSeries
from algo.strategy.condition_tree import evaluate_condition, evaluate_conditions
from algo.strategy.registry import evaluate
from shared.config.schema import Condition, parse_strategy_config
from shared.models.models import Candle, PositionState, Side, SignalType

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)
STEP = timedelta(minutes=15)


def _candles(closes: list[float]) -> list[Candle]:
    out = []
    prev = closes[0]
    for i, c in enumerate(closes):
        t = T0 + STEP * i
        out.append(Candle(t, t + STEP, prev, max(prev, c) + 0.5, min(prev, c) - 0.5, c, 100.0))
        prev = c
    return out


RISING = [float(i) for i in range(1, 11)]


def _price(source: str = "close") -> dict:
    return {"type": "price", "params": {"source": source}}


def _cond(**kw) -> Condition:
    kw.setdefault("indicator", _price())
    return Condition.model_validate(kw)


@pytest.mark.parametrize(
    "cond, expected",
    [
        (dict(operator="greater_than", value=9.5), True),
        (dict(operator="less_than", value=9.5), False),
        (dict(operator="equals", value=10.005), True),
        (dict(operator="equals", value=10.02), False),
        (dict(operator="between", value=9.0, value2=10.0), True),
        (dict(operator="crosses_above", value=9.5), True),
        (dict(operator="crosses_below", value=9.5), False),
        (dict(operator="indicator_comparison", compare_indicator=_price("open")), True),
        (dict(operator="breakout_above", lookback_bars=3), True),
        (dict(operator="breakout_below", lookback_bars=3), False),
        (dict(operator="breakout_above", lookback_bars=20), False),
    ],
)
def test_operators_at_last_bar(cond, expected):
    series = CandleSeries(_candles(RISING))
    assert evaluate_condition(series, 9, _cond(**cond)) is expected


def test_crosses_above_requires_previous_below():
    series = CandleSeries(_candles(RISING))
    # index 8：前值 8、当前 9，都没越过 9.5
    assert evaluate_condition(series, 8, _cond(operator="crosses_above", value=9.5)) is False


def test_crosses_against_compare_indicator():
    closes = [10.0, 10.0, 10.0, 10.0, 9.0, 8.0, 12.0]
    series = CandleSeries(_candles(closes))
    cond = _cond(
        indicator={"type": "sma", "params": {"period": 2}},
        operator="crosses_above",
        compare_indicator={"type": "sma", "params": {"period": 3}},
    )
    # sma2: 8.5 -> 10.0；sma3: 9.0 -> 9.667
    assert evaluate_condition(series, 6, cond) is True
    assert evaluate_condition(series, 5, cond) is False


def test_undefined_indicator_value_is_false():
    series = CandleSeries(_candles(RISING))
    cond = _cond(indicator={"type": "sma", "params": {"period": 50}}, operator="greater_than", value=0)
    assert evaluate_condition(series, 9, cond) is False


def _tree(conditions: list[dict], groups: list[dict] | None = None, **overrides) -> dict:
    cfg = {"kind": "condition_tree", "min_candles": 2, "conditions": conditions, "groups": groups or []}
    cfg.update(overrides)
    return cfg


def test_group_logic():
    series = CandleSeries(_candles(RISING))
    true_c = {"indicator": _price(), "operator": "greater_than", "value": 5}
    false_c = {"indicator": _price(), "operator": "less_than", "value": 5}

    cfg = parse_strategy_config(
        _tree(
            [true_c, {**true_c, "group_id": "any"}, {**false_c, "group_id": "any"}],
            [{"id": "any", "group_operator": "OR"}],
        )
    )
    assert evaluate_conditions(series, 9, cfg, "buy") is True

    cfg = parse_strategy_config(
        _tree(
            [true_c, {**true_c, "group_id": "all"}, {**false_c, "group_id": "all"}],
            [{"id": "all", "group_operator": "AND"}],
        )
    )
    assert evaluate_conditions(series, 9, cfg, "buy") is False

    cfg = parse_strategy_config(_tree([true_c, false_c]))
    assert evaluate_conditions(series, 9, cfg, "buy") is False
    # 没有 sell 条件
    assert evaluate_conditions(series, 9, cfg, "sell") is False


def test_entry_signal_with_percentage_levels():
    cfg = _tree(
        [{"indicator": _price(), "operator": "greater_than", "value": 5}],
        stop_loss_pct=2,
        take_profit_pct=5,
    )
    sig = evaluate(cfg, _candles(RISING))
    assert sig.type is SignalType.BUY
    assert sig.confidence == 90.0
    assert abs(sig.stop_loss - 9.8) < 1e-9
    assert abs(sig.take_profit - 10.5) < 1e-9


def test_sell_entry_only_when_short_allowed():
    conditions = [
        {"indicator": _price(), "operator": "less_than", "value": 5},
        {"indicator": _price(), "operator": "greater_than", "value": 5, "order_type": "sell"},
    ]
    assert evaluate(_tree(conditions), _candles(RISING)).is_hold
    sig = evaluate(_tree(conditions, allow_short=True), _candles(RISING))
    assert sig.type is SignalType.SELL


def _long(candles: list[Candle], index: int, price: float) -> PositionState:
    return open_position(PositionState.flat(), side=Side.LONG, price=price, time=candles[index].close_time)


def test_exit_order_stop_then_take_profit():
    candles = _candles(RISING)
    cfg = _tree(
        [{"indicator": _price(), "operator": "greater_than", "value": 100}],
        stop_loss_pct=10,
        take_profit_pct=50,
    )
    sl = evaluate(cfg, candles, _long(candles, 5, 20.0))
    assert sl.type is SignalType.SELL
    assert sl.metadata["exit_reason"] == ExitReason.STOP_LOSS.value

    tp = evaluate(cfg, candles, _long(candles, 5, 6.0))
    assert tp.metadata["exit_reason"] == ExitReason.TAKE_PROFIT.value


def test_trailing_stop_from_best_price():
    candles = _candles(RISING + [9.0, 8.0])
    cfg = _tree(
        [{"indicator": _price(), "operator": "greater_than", "value": 100}],
        trailing_stop_pct=10,
    )
    # 入场后最高价 10.5，当前 8.0 回撤约 23.8%
    sig = evaluate(cfg, candles, _long(candles, 5, 6.0))
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.TRAILING_STOP.value


def test_opposite_conditions_close_position():
    candles = _candles(RISING)
    cfg = _tree(
        [
            {"indicator": _price(), "operator": "greater_than", "value": 100},
            {"indicator": _price(), "operator": "less_than", "value": 100, "order_type": "sell"},
        ]
    )
    sig = evaluate(cfg, candles, _long(candles, 5, 6.0))
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.SIGNAL.value

    held = evaluate(_tree([{"indicator": _price(), "operator": "greater_than", "value": 100}]), candles,
                    _long(candles, 5, 6.0))
    assert held.is_hold
