from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from algo.factors.composite import CompositeResult
from algo.position.lifecycle import ExitReason, open_position
from algo.strategy import composite_sentiment
from algo.strategy.registry import available_strategies, evaluate, required_candles
from shared.errors import ConfigurationError
from shared.models.models import Candle, PositionState, Side, SignalType

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

# 快线 3 / 慢线 5：最后一根分别出现金叉、死叉
BULLISH = [10.0, 9.8, 9.6, 9.4, 9.2, 9.0, 8.8, 8.6, 10.0]
BEARISH = [10.0, 10.2, 10.4, 10.6, 10.8, 11.0, 11.2, 11.4, 10.0]


def _candles(closes: list[float], step: timedelta = timedelta(minutes=5)) -> list[Candle]:
    out = []
    prev = closes[0]
    for i, c in enumerate(closes):
        t = T0 + step * i
        out.append(Candle(t, t + step, prev, max(prev, c) + 0.5, min(prev, c) - 0.5, c, 100.0))
        prev = c
    return out


def _ema_cfg(**overrides) -> dict:
    cfg = {
        "kind": "ema_crossover_scalping",
        "fast_ema": 3,
        "slow_ema": 5,
        "atr_period": 3,
        "safety_margin": 0,
        "max_position_time": None,
    }
    cfg.update(overrides)
    return cfg


def _long_at(price: float, candles: list[Candle]) -> PositionState:
    return open_position(PositionState.flat(), side=Side.LONG, price=price, time=candles[0].close_time)


def test_registry_covers_all_families():
    assert set(available_strategies()) == {
        "ema_crossover_scalping",
        "composite_sentiment",
        "range_reentry",
        "condition_tree",
    }
    assert required_candles(_ema_cfg()) == 5


def test_invalid_config_fails_on_activation():
    with pytest.raises(ConfigurationError):
        evaluate({"kind": "ema_crossover_scalping", "fast_ema": 30, "slow_ema": 10}, _candles(BULLISH))
    with pytest.raises(ConfigurationError):
        evaluate({"kind": "no_such_strategy"}, _candles(BULLISH))


def test_ema_bullish_crossover_enters_long():
    sig = evaluate(_ema_cfg(), _candles(BULLISH))
    assert sig.type is SignalType.BUY
    assert "bullish" in sig.reason
    assert sig.confidence == 90.0
    assert sig.time_to_expire is None
    assert sig.stop_loss < 10.0 < sig.take_profit
    # 止盈距离 = 1.5 倍止损距离
    assert abs((sig.take_profit - 10.0) - 1.5 * (10.0 - sig.stop_loss)) < 1e-9


def test_ema_entry_expiry_from_position_time():
    sig = evaluate(_ema_cfg(max_position_time=900), _candles(BULLISH))
    assert sig.time_to_expire == 15


def test_ema_bearish_crossover_respects_allow_short():
    sig = evaluate(_ema_cfg(), _candles(BEARISH))
    assert sig.type is SignalType.SELL
    assert sig.stop_loss > 10.0 > sig.take_profit

    sig = evaluate(_ema_cfg(allow_short=False), _candles(BEARISH))
    assert sig.is_hold


def test_ema_no_crossover_holds():
    sig = evaluate(_ema_cfg(), _candles(BULLISH), index=7)
    assert sig.is_hold
    assert sig.reason == "no crossover"


def test_ema_filter_block_vs_confidence_penalty():
    blocked = evaluate(_ema_cfg(use_rsi_filter=True, rsi_period=3, rsi_long_threshold=100), _candles(BULLISH))
    assert blocked.is_hold
    assert "filtered" in blocked.reason
    assert blocked.metadata["filtered"] == ["rsi_zone"]

    penalized = evaluate(
        _ema_cfg(use_rsi_filter=True, rsi_period=3, rsi_long_threshold=100, filter_mode="confidence_penalty"),
        _candles(BULLISH),
    )
    assert penalized.type is SignalType.BUY
    assert penalized.confidence == 80.0


def test_ema_low_liquidity_window_blocks():
    # 测试数据从 UTC 00:00 开始，落在默认 22:00-06:00 窗口内
    sig = evaluate(_ema_cfg(use_liquidity_window=True), _candles(BULLISH))
    assert sig.is_hold
    assert "low_liquidity_window" in sig.reason


def test_ema_time_exit_has_priority_over_stop_loss():
    candles = _candles(BULLISH)
    position = _long_at(20.0, candles)
    sig = evaluate(_ema_cfg(max_position_time=60), candles, position)
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.TIME_EXIT.value
    assert sig.confidence == 70.0


def test_ema_stop_loss_and_take_profit_exits():
    candles = _candles(BULLISH)
    sl = evaluate(_ema_cfg(), candles, _long_at(20.0, candles))
    assert sl.type is SignalType.SELL
    assert sl.metadata["exit_reason"] == ExitReason.STOP_LOSS.value

    tp = evaluate(_ema_cfg(), candles, _long_at(1.0, candles))
    assert tp.metadata["exit_reason"] == ExitReason.TAKE_PROFIT.value
    assert tp.confidence == 95.0


def test_ema_short_profit_sign():
    candles = _candles(BEARISH)
    # 空头：价格低于入场价为盈利
    winner = open_position(PositionState.flat(), side=Side.SHORT, price=20.0, time=candles[0].close_time)
    sig = evaluate(_ema_cfg(), candles, winner)
    assert sig.type is SignalType.BUY
    assert sig.metadata["exit_reason"] == ExitReason.TAKE_PROFIT.value

    loser = open_position(PositionState.flat(), side=Side.SHORT, price=5.0, time=candles[0].close_time)
    sig = evaluate(_ema_cfg(), candles, loser)
    assert sig.metadata["exit_reason"] == ExitReason.STOP_LOSS.value


def test_ema_reversal_exit():
    candles = _candles(BEARISH)
    sig = evaluate(_ema_cfg(), candles, _long_at(10.0, candles))
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.REVERSAL.value


def test_evaluate_does_not_mutate_position():
    candles = _candles(BEARISH)
    position = _long_at(10.0, candles)
    evaluate(_ema_cfg(), candles, position)
    assert position.is_open and position.side is Side.LONG


def test_insufficient_data_returns_hold():
    sig = evaluate(_ema_cfg(), _candles(BULLISH)[:4])
    assert sig.is_hold
    assert sig.reason == "insufficient data"
    assert sig.metadata == {"required": 5, "available": 4}

    assert evaluate(_ema_cfg(), []).reason == "insufficient data"


def test_nan_input_returns_hold():
    candles = _candles(BULLISH)
    last = candles[-1]
    candles[-1] = Candle(last.open_time, last.close_time, last.open, last.high, last.low, math.nan, last.volume)
    sig = evaluate(_ema_cfg(), candles)
    assert sig.is_hold
    assert sig.reason.startswith("invalid indicator value")


def _composite_cfg(**overrides) -> dict:
    cfg = {"kind": "composite_sentiment", "min_candles": 26}
    cfg.update(overrides)
    return cfg


def _fake_scores(monkeypatch: pytest.MonkeyPatch, prev: float, curr: float, n: int = 30) -> None:
    score = np.zeros(n)
    score[-2] = prev
    score[-1] = curr

    def _fake(series, cfg):
        return CompositeResult(score, score, score, score, score, score)

    monkeypatch.setattr(composite_sentiment, "composite_for", _fake)


def test_composite_long_threshold_cross(monkeypatch: pytest.MonkeyPatch):
    candles = _candles([100.0 + i for i in range(30)])
    _fake_scores(monkeypatch, 20.0, 35.0)
    sig = evaluate(_composite_cfg(), candles)
    assert sig.type is SignalType.BUY
    assert sig.confidence == 67.5
    assert sig.metadata["score"] == 35.0

    # 已经在阈值之上不是穿越
    _fake_scores(monkeypatch, 35.0, 40.0)
    assert evaluate(_composite_cfg(), candles).is_hold


def test_composite_short_cross_and_levels(monkeypatch: pytest.MonkeyPatch):
    candles = _candles([100.0 + i for i in range(30)])
    _fake_scores(monkeypatch, -20.0, -35.0)
    sig = evaluate(_composite_cfg(stop_loss_pct=2, take_profit_pct=4), candles)
    assert sig.type is SignalType.SELL
    price = candles[-1].close
    assert abs(sig.stop_loss - price * 1.02) < 1e-9
    assert abs(sig.take_profit - price * 0.96) < 1e-9


def test_composite_exit_on_exit_threshold(monkeypatch: pytest.MonkeyPatch):
    candles = _candles([100.0 + i for i in range(30)])
    _fake_scores(monkeypatch, 5.0, -5.0)
    position = _long_at(candles[-1].close, candles)
    sig = evaluate(_composite_cfg(), candles, position)
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.REVERSAL.value


def test_composite_extreme_is_informational(monkeypatch: pytest.MonkeyPatch):
    candles = _candles([100.0 + i for i in range(30)])
    _fake_scores(monkeypatch, 20.0, 80.0)
    sig = evaluate(_composite_cfg(), candles)
    assert sig.type is SignalType.BUY
    assert sig.metadata["extreme"] is True


def test_composite_real_score_runs_end_to_end():
    rng = np.random.default_rng(3)
    closes = list(100 + np.cumsum(rng.normal(0, 1, 80)))
    sig = evaluate(_composite_cfg(min_candles=50), _candles(closes))
    assert sig.type in (SignalType.BUY, SignalType.SELL, SignalType.HOLD)
    assert -100.0 <= sig.metadata["score"] <= 100.0
