from __future__ import annotations

from datetime import datetime, timedelta, timezone

from algo.position.lifecycle import ExitReason, open_position
from algo.strategy.base import CandleSeries
from algo.strategy.range_reentry import session_range
from algo.strategy.registry import evaluate
from shared.config.schema import parse_strategy_config
from shared.models.models import Candle, PositionState, Side, SignalType

HOUR = timedelta(hours=1)
# 1 月纽约为 UTC-5：NY 00:00-03:59 对应 UTC 05:00-08:59
WINTER_SESSION = datetime(2024, 1, 2, 5, tzinfo=timezone.utc)

# (open, high, low, close)：区间高 103，低 99
SESSION_BARS = [
    (100.0, 102.0, 99.0, 101.0),
    (101.0, 103.0, 100.0, 102.0),
    (102.0, 102.5, 100.0, 100.5),
    (100.5, 101.0, 99.5, 100.0),
]


def _bars(rows, start: datetime = WINTER_SESSION, volumes=None) -> list[Candle]:
    out = []
    for i, (o, h, lo, c) in enumerate(rows):
        t = start + HOUR * i
        vol = 100.0 if volumes is None else volumes[i]
        out.append(Candle(t, t + HOUR, o, h, lo, c, vol))
    return out


def _cfg(**overrides) -> dict:
    cfg = {
        "kind": "range_reentry",
        "use_adx_filter": False,
        "use_rsi_filter": False,
        "use_volume_filter": False,
        "safety_margin": 0,
    }
    cfg.update(overrides)
    return cfg


def test_no_trading_inside_session():
    candles = _bars(SESSION_BARS)
    sig = evaluate(_cfg(), candles)
    assert sig.is_hold
    assert sig.reason == "session range not established"


def test_long_reentry_after_break_below_range():
    candles = _bars(
        SESSION_BARS
        + [
            (100.0, 100.0, 97.5, 98.0),
            (98.0, 99.8, 97.8, 99.5),
        ]
    )
    first = evaluate(_cfg(), candles, index=4)
    assert first.is_hold
    assert first.metadata["range_low"] == 99.0

    sig = evaluate(_cfg(), candles)
    assert sig.type is SignalType.BUY
    assert "re-entry above range low" in sig.reason
    # 区间高度 4，止损 = 0.5 * 4，止盈 = 3 倍止损
    assert sig.stop_loss == 97.5
    assert sig.take_profit == 105.5
    assert sig.time_to_expire == 240
    assert sig.metadata["range_high"] == 103.0
    assert sig.metadata["range_low"] == 99.0


def test_retest_of_range_low_enters_long():
    candles = _bars(SESSION_BARS + [(100.0, 100.5, 99.05, 100.2)])
    sig = evaluate(_cfg(), candles)
    assert sig.type is SignalType.BUY
    assert "retest" in sig.reason

    assert evaluate(_cfg(enable_retest_entry=False), candles).is_hold


def test_short_reentry_below_range_high():
    candles = _bars(
        SESSION_BARS
        + [
            (100.0, 104.0, 100.0, 103.5),
            (103.5, 104.0, 102.0, 102.5),
        ]
    )
    sig = evaluate(_cfg(), candles)
    assert sig.type is SignalType.SELL
    assert sig.stop_loss == 104.5
    assert sig.take_profit == 96.5

    assert evaluate(_cfg(allow_short=False), candles).is_hold


def test_volume_filter_block_and_penalty():
    rows = SESSION_BARS + [(100.0, 100.0, 97.5, 98.0), (98.0, 99.8, 97.8, 99.5)]
    candles = _bars(rows, volumes=[100.0] * len(rows))
    blocked = evaluate(_cfg(use_volume_filter=True, volume_lookback=3), candles)
    assert blocked.is_hold
    assert "filtered" in blocked.reason

    penalized = evaluate(
        _cfg(use_volume_filter=True, volume_lookback=3, filter_mode="confidence_penalty"), candles
    )
    assert penalized.type is SignalType.BUY
    assert penalized.confidence == 75.0


def test_range_resets_on_new_day():
    rows = SESSION_BARS + [(100.0, 100.0, 97.5, 98.0)]
    candles = _bars(rows)
    # 次日 NY 04:00，当天时段内没有 K 线
    t = datetime(2024, 1, 3, 9, tzinfo=timezone.utc)
    candles.append(Candle(t, t + HOUR, 98.0, 99.8, 97.8, 99.5, 100.0))
    sig = evaluate(_cfg(), candles)
    assert sig.is_hold
    assert sig.reason == "session range not established"


def test_session_range_follows_daylight_saving():
    # 7 月纽约为 UTC-4：NY 00:00 对应 UTC 04:00
    summer = datetime(2024, 7, 2, 4, tzinfo=timezone.utc)
    candles = _bars(SESSION_BARS + [(100.0, 100.5, 99.5, 100.0)], start=summer)
    cfg = parse_strategy_config(_cfg())
    series = CandleSeries(candles)
    assert session_range(series, 3, cfg) is None
    assert session_range(series, 4, cfg) == (103.0, 99.0)


def _open_long(candles: list[Candle]) -> PositionState:
    return open_position(
        PositionState.flat(),
        side=Side.LONG,
        price=99.5,
        time=candles[4].close_time,
        stop_loss=97.5,
        take_profit=105.5,
        range_high=103.0,
        range_low=99.0,
    )


def test_long_exits_on_take_profit_and_stop_loss():
    base = SESSION_BARS + [(98.0, 99.8, 97.8, 99.5)]
    tp = _bars(base + [(99.5, 106.5, 99.0, 106.0)])
    sig = evaluate(_cfg(), tp, _open_long(tp))
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.TAKE_PROFIT.value

    sl = _bars(base + [(99.5, 99.6, 96.5, 97.0)])
    sig = evaluate(_cfg(), sl, _open_long(sl))
    assert sig.metadata["exit_reason"] == ExitReason.STOP_LOSS.value


def test_long_reversal_below_range_high():
    candles = _bars(
        SESSION_BARS
        + [
            (98.0, 99.8, 97.8, 99.5),
            (99.5, 104.5, 99.5, 104.0),
            (104.0, 104.0, 102.5, 102.8),
        ]
    )
    sig = evaluate(_cfg(), candles, _open_long(candles))
    assert sig.type is SignalType.SELL
    assert sig.metadata["exit_reason"] == ExitReason.REVERSAL.value


def test_time_exit_first():
    candles = _bars(SESSION_BARS + [(98.0, 99.8, 97.8, 99.5), (99.5, 100.0, 99.0, 99.8)])
    position = _open_long(candles)
    position.entry_time = candles[0].open_time
    sig = evaluate(_cfg(max_position_time=3600), candles, position)
    assert sig.metadata["exit_reason"] == ExitReason.TIME_EXIT.value
