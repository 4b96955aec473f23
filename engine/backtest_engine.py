"""单次回测引擎。

流程：配置 → K 线 → 逐根评估/撮合 → 交易台账 → 报告/产物。

撮合规则
--------
- 第 i 根 K 线上执行的是基于 0..i-1 的评估结果（无未来函数），成交价取第 i 根的 open 或 close；
- 滑点对交易者不利：买入价 × (1 + slippage)，卖出价 × (1 - slippage)；
- 手续费 = 名义价值 × 费率，开仓与平仓各收一次；
- 仓位 = 余额 × position_size_pct% × 杠杆 / 含滑点入场价（现货杠杆固定为 1）；
- 评估附带 SL/TP 时按 K 线高低点检查盘中触发，同一根内两者都触及按止损处理；
- 结束时仍持仓，按最后一根收盘价强制平仓，出场原因 "end of backtest"。
"""

from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
from pydantic import ValidationError

from algo.position.lifecycle import (
    ExitReason,
    apply_partial_close,
    close_position,
    due_partial_levels,
    level_exit,
    open_position,
    update_trailing_stop,
)
from algo.strategy.base import CandleSeries
from algo.strategy.registry import evaluate, required_candles
from engine.base_engine import BaseEngine, EngineResult
from shared.config.config_loader import load_config
from shared.config.schema import AppConfig, SimParams, parse_strategy_config
from shared.errors import ConfigurationError, PersistenceConflict
from shared.models.models import BacktestReport, BalancePoint, Candle, PositionState, Side, Trade
from shared.state.sqlite_ledger import SqliteLedger
from shared.utils.candles import load_candles_csv
from shared.utils.logging import setup_logger
from utils.hashing import sha256_file, sha256_json
from utils.metrics import compute_equity_metrics, compute_trade_metrics
from utils.plotter import plot_balance_curve, plot_drawdown

_LOGGER = setup_logger("backtest")


def _resolve_sim_params(sim_params: SimParams | dict | None) -> SimParams:
    if sim_params is None:
        return SimParams()
    if isinstance(sim_params, SimParams):
        return sim_params
    try:
        return SimParams.model_validate(sim_params)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid backtest params: {exc}") from exc


def apply_slippage(price: float, slippage: float, *, buying: bool) -> float:
    """滑点总是对交易者不利。"""
    return price * (1 + slippage) if buying else price * (1 - slippage)


def make_run_id(
    strategy_config: Any,
    candles: Sequence[Candle],
    sim_params: SimParams,
    *,
    complete: bool = True,
) -> str:
    """同一配置 + 同一数据 -> 同一 run_id。

    取消的回测只传入实际回放过的 K 线，并带上 complete 标记，不会占用完整回测的 run_id。
    """
    payload = {
        "complete": complete,
        "strategy": strategy_config.model_dump(mode="json"),
        "sim": sim_params.model_dump(mode="json"),
        "n": len(candles),
        "first": candles[0].open_time.isoformat() if candles else None,
        "last": candles[-1].close_time.isoformat() if candles else None,
    }
    return sha256_json(payload)[:16]


class _Simulator:
    """回测状态：余额、持仓、台账、回撤。"""

    def __init__(self, params: SimParams):
        self.params = params
        self.balance = params.initial_balance
        self.position = PositionState.flat()
        self.trades: list[Trade] = []
        self.history: list[BalancePoint] = []
        self.peak = params.initial_balance
        self.max_drawdown_pct = 0.0
        self._margin = 0.0
        self._credited = 0.0  # 已计入余额的部分平仓盈亏

    @property
    def leverage(self) -> float:
        return self.params.effective_leverage

    def open(self, side: Side, raw_price: float, time, signal) -> None:
        price = apply_slippage(raw_price, self.params.slippage, buying=side is Side.LONG)
        notional = self.balance * self.params.position_size_pct / 100.0 * self.leverage
        qty = notional / price
        if qty <= 0:
            _LOGGER.warning("余额不足，跳过开仓：balance=%.4f", self.balance)
            return
        entry_fee = qty * price * self.params.fee_rate
        open_position(
            self.position,
            side=side,
            price=price,
            time=time,
            size=qty,
            entry_fee=entry_fee,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            range_high=signal.metadata.get("range_high"),
            range_low=signal.metadata.get("range_low"),
        )
        self._margin = qty * price / self.leverage
        self._credited = 0.0
        _LOGGER.debug("开仓 %s qty=%.6f @ %.4f（%s）", side.value, qty, price, signal.reason)

    def close(self, raw_price: float, time, reason: str | ExitReason) -> Trade:
        side = self.position.side
        if side is None:
            raise ValueError("cannot close a flat position")
        price = apply_slippage(raw_price, self.params.slippage, buying=side is Side.SHORT)
        trade = close_position(
            self.position, price=price, time=time, reason=reason, fee_rate=self.params.fee_rate
        )
        if self.params.trading_mode == "futures":
            trade = replace(trade, margin=self._margin)
        self.balance += trade.profit - self._credited
        self._credited = 0.0
        self.trades.append(trade)
        _LOGGER.debug("平仓 %s @ %.4f profit=%.4f（%s）", side.value, trade.exit_price, trade.profit, trade.exit_reason)
        return trade

    def partial_closes(self, raw_price: float, time) -> None:
        side = self.position.side
        if side is None:
            raise ValueError("cannot partially close a flat position")
        for level in due_partial_levels(self.position, raw_price, list(self.params.partial_close_levels)):
            price = apply_slippage(raw_price, self.params.slippage, buying=side is Side.SHORT)
            record = apply_partial_close(
                self.position,
                level=level,
                fraction=self.params.partial_close_fraction,
                price=price,
                time=time,
                fee_rate=self.params.fee_rate,
            )
            self.balance += record.profit
            self._credited += record.profit

    def mark(self, time) -> None:
        self.history.append(BalancePoint(time=time, balance=self.balance))
        self.peak = max(self.peak, self.balance)
        if self.peak > 0:
            self.max_drawdown_pct = max(self.max_drawdown_pct, (self.peak - self.balance) / self.peak * 100.0)


def _step(sim: _Simulator, series: CandleSeries, cfg: Any, i: int) -> None:
    params = sim.params
    candle = series.candles[i]
    at_open = params.execution_price == "open"
    exec_price = candle.open if at_open else candle.close
    exec_time = candle.open_time if at_open else candle.close_time
    position = sim.position

    signal = evaluate(cfg, series=series, index=i - 1, position_state=position)
    opened_now = False
    if position.is_open:
        if not signal.is_hold and signal.type is position.side.exit_signal:
            reason = signal.metadata.get("exit_reason", ExitReason.SIGNAL.value)
            sim.close(exec_price, exec_time, reason)
    elif not signal.is_hold and sim.balance > 0:
        side = Side.LONG if signal.type is Side.LONG.entry_signal else Side.SHORT
        sim.open(side, exec_price, exec_time, signal)
        opened_now = sim.position.is_open

    if position.is_open and not opened_now:
        if params.intrabar_exits:
            hit = level_exit(position, candle.high, candle.low)
            if hit is not None:
                reason, level_price = hit
                sim.close(level_price, candle.close_time, reason)
        if position.is_open and params.trailing_stop:
            best = candle.high if position.side is Side.LONG else candle.low
            update_trailing_stop(position, best, params.trailing_activation_ratio)
    if position.is_open and params.partial_close_levels:
        sim.partial_closes(candle.close, candle.close_time)

    sim.mark(candle.close_time)


def run_backtest(
    strategy_config: Any,
    candles: Sequence[Candle],
    sim_params: SimParams | dict | None = None,
    *,
    benchmark: Sequence[float] | None = None,
    cancel_event: threading.Event | None = None,
    ledger: SqliteLedger | None = None,
    run_id: str | None = None,
) -> BacktestReport:
    """回放 K 线序列，返回 BacktestReport。

    同一输入多次运行结果完全一致；`cancel_event` 被置位时提前结束，
    报告 `complete=False`。传入 ledger 时报告与交易落库。
    """
    cfg = parse_strategy_config(strategy_config)
    params = _resolve_sim_params(sim_params)
    candles = list(candles)
    series = CandleSeries(candles, benchmark)
    sim = _Simulator(params)

    warmup = max(1, required_candles(cfg))
    if len(candles) <= warmup:
        _LOGGER.warning("K 线不足：需要 > %d 根，实际 %d 根，回测无交易", warmup, len(candles))

    complete = True
    last_index: int | None = None
    for i in range(warmup, len(candles)):
        if cancel_event is not None and cancel_event.is_set():
            _LOGGER.warning("回测已取消：处理到第 %d/%d 根", i, len(candles))
            complete = False
            break
        _step(sim, series, cfg, i)
        last_index = i

    if sim.position.is_open and last_index is not None:
        last = candles[last_index]
        sim.close(last.close, last.close_time, ExitReason.END_OF_BACKTEST)
        sim.history[-1] = BalancePoint(time=last.close_time, balance=sim.balance)
        sim.peak = max(sim.peak, sim.balance)
        if sim.peak > 0:
            sim.max_drawdown_pct = max(sim.max_drawdown_pct, (sim.peak - sim.balance) / sim.peak * 100.0)

    trade_metrics = compute_trade_metrics(sim.trades)
    initial = params.initial_balance
    report = BacktestReport(
        initial_balance=initial,
        final_balance=sim.balance,
        total_return_pct=(sim.balance - initial) / initial * 100.0,
        trades=tuple(sim.trades),
        win_rate=trade_metrics["win_rate"],
        profit_factor=trade_metrics["profit_factor"],
        max_drawdown_pct=sim.max_drawdown_pct,
        avg_win=trade_metrics["avg_win"],
        avg_loss=trade_metrics["avg_loss"],
        balance_history=tuple(sim.history),
        complete=complete,
        winning_trades=trade_metrics["winning_trades"],
        losing_trades=trade_metrics["losing_trades"],
    )
    _LOGGER.info(
        "回测完成：trades=%d return=%.2f%% max_dd=%.2f%% complete=%s",
        report.total_trades,
        report.total_return_pct,
        report.max_drawdown_pct,
        complete,
    )

    if ledger is not None:
        replayed = candles if last_index is None else candles[: last_index + 1]
        derived_id = run_id is None
        run_id = run_id or make_run_id(cfg, replayed, params, complete=complete)
        try:
            ledger.insert_report(run_id, report)
        except PersistenceConflict:
            if not derived_id:
                raise
            # 派生 run_id 相同即输入相同，已落库的报告就是本次结果
            _LOGGER.info("回测报告已存在，跳过保存：run_id=%s", run_id)
    return report


def _export_trades_csv(trades: Sequence[Trade], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame([t.to_dict() for t in trades])
    df.to_csv(path, index=False)


def _export_balance_csv(history: Sequence[BalancePoint], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not history:
        return

    # ts, balance, drawdown, drawdown_pct
    data = []
    peak = -1e18
    for p in history:
        peak = max(peak, p.balance)
        dd = peak - p.balance
        data.append(
            {
                "ts": p.time.isoformat(),
                "balance": p.balance,
                "drawdown": dd,
                "drawdown_pct": dd / peak if peak > 0 else 0.0,
            }
        )
    pd.DataFrame(data).to_csv(path, index=False)


class BacktestEngine(BaseEngine):
    """单次回测引擎。

    Notes
    -----
    - 仅提供类接口；CLI 统一由仓库根目录 `main.py` 承担。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: AppConfig | None = None,
        candles: Sequence[Candle] | None = None,
        candles_path: str | Path | None = None,
        artifacts_dir: str | Path | None = None,
        cancel_event: threading.Event | None = None,
        plots: bool = False,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._candles = list(candles) if candles is not None else None
        self._candles_path = candles_path
        self._artifacts_dir = artifacts_dir
        self._cancel_event = cancel_event
        self._plots = plots
        self.report: BacktestReport | None = None

    def run(self) -> EngineResult:
        cfg = self._cfg_obj or load_config(self._cfg_path, load_env=False, expand_vars=False)
        candles = self._load_candles()

        ledger = SqliteLedger(cfg.ledger.path) if cfg.ledger.enabled else None
        try:
            report = run_backtest(
                cfg.strategy,
                candles,
                cfg.backtest,
                cancel_event=self._cancel_event,
                ledger=ledger,
            )
        finally:
            if ledger is not None:
                ledger.close()
        self.report = report

        summary = report.to_dict()
        summary.pop("trades")
        summary.pop("balance_history")
        summary["strategy_id"] = cfg.strategy_id
        summary["symbol"] = cfg.symbol
        summary["timeframe"] = cfg.timeframe
        summary["sharpe"] = compute_equity_metrics(report.balance_history)["sharpe"]
        if self._candles_path is not None:
            summary["data_sha256"] = sha256_file(self._candles_path)

        artifacts = self._export_artifacts(report, summary)
        _LOGGER.info("Backtest summary: %s", summary)
        return EngineResult(summary=summary, artifacts=artifacts)

    def _load_candles(self) -> list[Candle]:
        if self._candles is not None:
            return self._candles
        if self._candles_path is None:
            raise ConfigurationError("backtest requires candles or candles_path")
        return load_candles_csv(self._candles_path)

    def _export_artifacts(self, report: BacktestReport, summary: dict) -> dict[str, Any]:
        if self._artifacts_dir is None:
            return {}
        out_dir = Path(self._artifacts_dir)
        _export_trades_csv(report.trades, out_dir / "trades.csv")
        _export_balance_csv(report.balance_history, out_dir / "balance.csv")
        (out_dir / "summary.json").write_text(
            json.dumps(summary, ensure_ascii=False, indent=2, default=str), encoding="utf-8"
        )
        if self._plots:
            try:
                plot_balance_curve(report.balance_history, str(out_dir / "balance.png"))
                plot_drawdown(report.balance_history, str(out_dir / "drawdown.png"))
            except RuntimeError as exc:
                _LOGGER.warning("Plotting failed: %s", exc)
        return {"dir": str(out_dir)}
