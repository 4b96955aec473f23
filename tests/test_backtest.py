from __future__ import annotations

import json
import math
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from algo.position.lifecycle import ExitReason
from engine.backtest_engine import BacktestEngine, _Simulator, apply_slippage, make_run_id, run_backtest
from shared.config.config_loader import parse_config
from shared.config.schema import SimParams, parse_strategy_config
from shared.errors import ConfigurationError, PersistenceConflict
from shared.models.models import Candle, Side
from shared.state.sqlite_ledger import SqliteLedger
from shared.utils.candles import candles_to_frame

T0 = datetime(2024, 2, 1, tzinfo=timezone.utc)
STEP = timedelta(hours=1)

# 条件恒成立：第一根可交易 K 线开多，之后一直持有
ALWAYS_LONG = {
    "kind": "condition_tree",
    "min_candles": 2,
    "conditions": [{"indicator": {"type": "price"}, "operator": "greater_than", "value": 0}],
}
NO_COSTS = {"initial_balance": 1000, "maker_fee": 0, "taker_fee": 0, "slippage": 0}


def _candles(closes: list[float]) -> list[Candle]:
    out = []
    prev = closes[0]
    for i, c in enumerate(closes):
        t = T0 + STEP * i
        out.append(Candle(t, t + STEP, prev, max(prev, c) + 0.5, min(prev, c) - 0.5, c, 100.0))
        prev = c
    return out


def _wave(n: int = 240) -> list[float]:
    return [100 + 5 * math.sin(i / 6) + 2 * math.sin(i / 2.3) for i in range(n)]


def test_open_at_next_bar_and_close_at_end():
    candles = _candles([10.0, 11.0, 12.0, 13.0, 14.0])
    report = run_backtest(ALWAYS_LONG, candles, NO_COSTS)
    assert report.complete is True
    assert report.total_trades == 1
    trade = report.trades[0]
    # 基于 index 1 的信号在 index 2 的开盘价（= 11）成交
    assert trade.entry_price == 11.0
    assert trade.entry_time == candles[2].open_time
    assert trade.exit_price == 14.0
    assert trade.exit_reason == ExitReason.END_OF_BACKTEST.value
    assert abs(report.final_balance - (1000 + 3 * 1000 / 11)) < 1e-9
    assert abs(report.total_return_pct - 300 / 11) < 1e-9
    assert report.win_rate == 100.0
    # 没有亏损交易时 profit_factor 为 0，报告可序列化为严格 JSON
    assert report.profit_factor == 0.0
    json.dumps(report.to_dict(), allow_nan=False)
    assert len(report.balance_history) == 3
    assert report.balance_history[-1].balance == report.final_balance


def test_execution_at_close():
    candles = _candles([10.0, 11.0, 12.0, 13.0, 14.0])
    report = run_backtest(ALWAYS_LONG, candles, {**NO_COSTS, "execution_price": "close"})
    assert report.trades[0].entry_price == 12.0
    assert report.trades[0].entry_time == candles[2].close_time


def test_slippage_and_fees_are_adverse():
    assert apply_slippage(100.0, 0.01, buying=True) == 101.0
    assert apply_slippage(100.0, 0.01, buying=False) == 99.0

    candles = _candles([10.0, 11.0, 12.0, 13.0, 14.0])
    report = run_backtest(ALWAYS_LONG, candles, {"initial_balance": 1000, "taker_fee": 0.001, "slippage": 0.01})
    trade = report.trades[0]
    entry = 11.0 * 1.01
    exit_ = 14.0 * 0.99
    qty = 1000 / entry
    assert abs(trade.entry_price - entry) < 1e-9
    assert abs(trade.exit_price - exit_) < 1e-9
    expected_fees = qty * entry * 0.001 + qty * exit_ * 0.001
    assert abs(trade.fees - expected_fees) < 1e-9
    assert abs(trade.profit - ((exit_ - entry) * qty - expected_fees)) < 1e-9


def test_intrabar_stop_loss_then_reentry():
    cfg = {**ALWAYS_LONG, "stop_loss_pct": 10}
    candles = _candles([10.0, 11.0, 12.0, 8.0, 9.0])
    report = run_backtest(cfg, candles, NO_COSTS)
    assert report.total_trades == 2
    first, second = report.trades
    assert first.exit_reason == ExitReason.STOP_LOSS.value
    assert abs(first.exit_price - 9.9) < 1e-9
    assert abs(first.profit - (-100.0)) < 1e-9
    assert second.entry_price == 8.0
    assert second.exit_reason == ExitReason.END_OF_BACKTEST.value
    assert report.losing_trades == 1
    assert report.winning_trades == 1
    assert report.max_drawdown_pct == pytest.approx(10.0)


def test_partial_close_levels_in_backtest():
    candles = _candles([10.0, 10.0, 10.0, 10.5, 11.0, 11.0])
    params = {**NO_COSTS, "partial_close_levels": [4.0], "partial_close_fraction": 0.25}
    report = run_backtest(ALWAYS_LONG, candles, params)
    assert report.total_trades == 1
    trade = report.trades[0]
    qty = 100.0
    # index 3 收盘 10.5（+5%）平掉 1/4，其余在 11 收尾
    assert trade.quantity == qty
    assert abs(trade.profit - (0.5 * 25 + 1.0 * 75)) < 1e-9
    assert abs(report.final_balance - (1000 + 87.5)) < 1e-9


def test_futures_leverage_and_spot_ignores_it():
    candles = _candles([10.0, 11.0, 12.0, 13.0, 14.0])
    spot = run_backtest(ALWAYS_LONG, candles, {**NO_COSTS, "leverage": 5})
    fut = run_backtest(ALWAYS_LONG, candles, {**NO_COSTS, "leverage": 5, "trading_mode": "futures"})
    assert abs(fut.trades[0].profit - 5 * spot.trades[0].profit) < 1e-6
    assert spot.trades[0].margin is None
    assert abs(fut.trades[0].margin - 1000.0) < 1e-9


def test_short_trades_in_backtest():
    cfg = {
        "kind": "condition_tree",
        "min_candles": 2,
        "allow_short": True,
        "conditions": [
            {"indicator": {"type": "price"}, "operator": "less_than", "value": 0},
            {"indicator": {"type": "price"}, "operator": "greater_than", "value": 0, "order_type": "sell"},
        ],
    }
    candles = _candles([14.0, 13.0, 12.0, 11.0, 10.0])
    report = run_backtest(cfg, candles, NO_COSTS)
    trade = report.trades[0]
    assert trade.type is Side.SHORT
    assert trade.profit > 0
    assert abs(trade.profit - 3 * 1000 / 13) < 1e-9


def test_backtest_is_deterministic():
    cfg = {"kind": "ema_crossover_scalping", "fast_ema": 5, "slow_ema": 13, "atr_period": 7, "max_position_time": 6 * 3600}
    candles = _candles(_wave())
    a = run_backtest(cfg, candles)
    b = run_backtest(cfg, candles)
    assert a.total_trades > 0
    assert a.to_dict() == b.to_dict()
    # 每根可交易 K 线一个余额点
    warmup = 13 + 5
    assert len(a.balance_history) == len(candles) - warmup


def test_not_enough_candles_yields_empty_report():
    report = run_backtest(ALWAYS_LONG, _candles([10.0, 11.0]), NO_COSTS)
    assert report.total_trades == 0
    assert report.final_balance == 1000
    assert report.win_rate == 0.0
    assert report.profit_factor == 0.0


def test_cancellation_marks_report_incomplete():
    ev = threading.Event()
    ev.set()
    report = run_backtest(ALWAYS_LONG, _candles([10.0, 11.0, 12.0, 13.0]), NO_COSTS, cancel_event=ev)
    assert report.complete is False
    assert report.total_trades == 0
    assert report.final_balance == 1000


def test_invalid_sim_params_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        run_backtest(ALWAYS_LONG, _candles([10.0, 11.0, 12.0]), {"partial_close_levels": [2.0, 1.0]})
    with pytest.raises(ConfigurationError):
        run_backtest(ALWAYS_LONG, _candles([10.0, 11.0, 12.0]), {"execution_price": "vwap"})


def test_report_persisted_to_ledger():
    candles = _candles([10.0, 11.0, 12.0, 8.0, 9.0])
    cfg = {**ALWAYS_LONG, "stop_loss_pct": 10}
    with SqliteLedger(":memory:") as ledger:
        report = run_backtest(cfg, candles, NO_COSTS, ledger=ledger, run_id="run-1")
        saved = ledger.load_report("run-1")
        assert saved is not None
        assert saved["final_balance"] == report.final_balance
        assert saved["complete"] is True
        trades = list(ledger.iter_trades("run-1"))
        assert [t["exit_reason"] for t in trades] == ["stop loss", "end of backtest"]
        with pytest.raises(PersistenceConflict):
            ledger.insert_report("run-1", report)


def test_cancelled_run_does_not_block_full_run(tmp_path: Path):
    candles = _candles([10.0, 11.0, 12.0, 13.0])
    cfg = parse_strategy_config(ALWAYS_LONG)
    params = SimParams(**NO_COSTS)
    ev = threading.Event()
    ev.set()
    with SqliteLedger(tmp_path / "ledger.sqlite3") as ledger:
        run_backtest(cfg, candles, params, cancel_event=ev, ledger=ledger)
        full = run_backtest(cfg, candles, params, ledger=ledger)
        # 相同输入再跑一次：已落库，不报错
        again = run_backtest(cfg, candles, params, ledger=ledger)
        assert again.final_balance == full.final_balance

        saved = ledger.load_report(make_run_id(cfg, candles, params))
        assert saved is not None and saved["complete"] is True
        cancelled = ledger.load_report(make_run_id(cfg, candles, params, complete=False))
        assert cancelled is not None and cancelled["complete"] is False
        assert len(list(ledger.iter_trades(make_run_id(cfg, candles, params)))) == 1

        with pytest.raises(PersistenceConflict):
            run_backtest(cfg, candles, params, ledger=ledger, run_id=make_run_id(cfg, candles, params))


class _UnstorableTrade:
    def to_dict(self) -> dict:
        return {}


def test_report_and_trades_are_saved_atomically():
    report = run_backtest(ALWAYS_LONG, _candles([10.0, 11.0, 12.0, 13.0]), NO_COSTS)
    broken = replace(report, trades=(_UnstorableTrade(),))
    with SqliteLedger(":memory:") as ledger:
        with pytest.raises(AttributeError):
            ledger.insert_report("run-x", broken)
        assert ledger.load_report("run-x") is None
        ledger.insert_report("run-x", report)
        assert len(list(ledger.iter_trades("run-x"))) == 1


def test_simulator_drawdown_follows_realized_balance_path():
    # 三笔交易：+20、-30、+40，已实现余额 100 -> 120 -> 90 -> 130
    cfg = {
        "kind": "condition_tree",
        "min_candles": 2,
        "conditions": [
            {"indicator": {"type": "price"}, "operator": "greater_than", "value": 10},
            {"indicator": {"type": "price"}, "operator": "less_than", "value": 10, "order_type": "sell"},
        ],
    }
    candles = _candles([5.0, 11.0, 10.0, 9.0, 12.0, 16.0, 9.0, 12.0, 9.0, 13.0])
    params = {**NO_COSTS, "initial_balance": 100, "execution_price": "close"}
    report = run_backtest(cfg, candles, params)
    assert [t.profit for t in report.trades] == pytest.approx([20.0, -30.0, 40.0])
    balances = [p.balance for p in report.balance_history]
    assert balances == pytest.approx([100, 100, 120, 120, 120, 90, 90, 130])
    assert report.max_drawdown_pct == pytest.approx(25.0)
    assert report.final_balance == pytest.approx(130.0)


def test_run_id_depends_on_inputs():
    candles = _candles([10.0, 11.0, 12.0])
    cfg = parse_strategy_config(ALWAYS_LONG)
    a = make_run_id(cfg, candles, SimParams())
    assert a == make_run_id(cfg, candles, SimParams())
    assert a != make_run_id(cfg, candles, SimParams(slippage=0.001))
    assert len(a) == 16


def test_engine_writes_artifacts(tmp_path: Path):
    candles = _candles([10.0, 11.0, 12.0, 8.0, 9.0])
    csv_path = tmp_path / "candles.csv"
    candles_to_frame(candles).to_csv(csv_path, index=False)
    cfg = parse_config(
        {
            "strategy_id": "bt-1",
            "symbol": "ETHUSDT",
            "strategy": {**ALWAYS_LONG, "stop_loss_pct": 10},
            "backtest": NO_COSTS,
        }
    )
    out_dir = tmp_path / "artifacts"
    engine = BacktestEngine(cfg_obj=cfg, candles_path=csv_path, artifacts_dir=out_dir)
    res = engine.run()

    assert res.summary["strategy_id"] == "bt-1"
    assert res.summary["symbol"] == "ETHUSDT"
    assert res.summary["total_trades"] == 2
    assert "trades" not in res.summary
    assert len(res.summary["data_sha256"]) == 64
    assert engine.report is not None and engine.report.total_trades == 2
    assert res.artifacts == {"dir": str(out_dir)}
    assert (out_dir / "trades.csv").exists()
    assert (out_dir / "balance.csv").exists()
    summary = json.loads((out_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["total_trades"] == 2


def test_engine_requires_candles():
    cfg = parse_config({"strategy": ALWAYS_LONG})
    with pytest.raises(ConfigurationError):
        BacktestEngine(cfg_obj=cfg).run()


def test_simulator_rejects_closing_flat_position():
    sim = _Simulator(SimParams(**NO_COSTS))
    with pytest.raises(ValueError, match="flat position"):
        sim.close(10.0, T0, ExitReason.SIGNAL)
    with pytest.raises(ValueError, match="flat position"):
        sim.partial_closes(10.0, T0)
