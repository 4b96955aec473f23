"""策略信号与回测引擎统一命令行入口。

子命令：

- `backtest`：单次回测。对历史 K 线回放策略，输出报告。
- `evaluate`：对 K 线序列最后一根评估一次策略，输出信号；`--deliver` 时走完整监控周期并投递。
- `test`：运行 pytest。
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from typing import Any

from algo.strategy.registry import evaluate
from delivery.dispatcher import SignalDispatcher
from delivery.store import InMemorySignalStore
from engine.backtest_engine import BacktestEngine
from engine.monitor import StrategyMonitor
from shared.config.config_loader import load_config
from shared.state.sqlite_ledger import SqliteLedger
from shared.utils.candles import load_candles_csv


@dataclass
class CliArgs:
    """命令行参数结构。

    config: 配置文件路径
    task: 要运行的任务类型 (backtest/evaluate/test)
    """
    config: str
    task: str
    candles: str | None = None
    output: str | None = None     # backtest 报告 JSON 输出路径
    artifacts_dir: str | None = None
    deliver: bool = False         # evaluate 时是否投递信号
    plots: bool = False


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(prog="signal-engine", description="策略信号与回测引擎")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/config.yml)",
        )

    # 允许 `python main.py --config ... backtest`（全局）与 `python main.py backtest --config ...`（子命令）
    _add_config_arg(parser, default="config/config.yml")

    sub = parser.add_subparsers(dest="task")

    p_backtest = sub.add_parser("backtest", help="单次回测")
    _add_config_arg(p_backtest, default=argparse.SUPPRESS)
    p_backtest.add_argument("--candles", required=True, help="K 线 CSV 路径")
    p_backtest.add_argument("--output", default=None, help="报告 JSON 输出路径")
    p_backtest.add_argument("--artifacts-dir", default=None, help="trades/balance CSV 输出目录")
    p_backtest.add_argument("--plots", action="store_true", help="在产物目录输出余额/回撤图（需要 matplotlib）")

    p_eval = sub.add_parser("evaluate", help="对最新 K 线评估一次")
    _add_config_arg(p_eval, default=argparse.SUPPRESS)
    p_eval.add_argument("--candles", required=True, help="K 线 CSV 路径")
    p_eval.add_argument("--deliver", action="store_true", help="按配置投递信号（去重/限流/通道）")

    sub.add_parser("test", help="运行 pytest")
    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = build_parser()
    ns = parser.parse_args(argv)
    if ns.task is None:
        parser.error("a task is required: backtest / evaluate / test")
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task,
        candles=getattr(ns, "candles", None),
        output=getattr(ns, "output", None),
        artifacts_dir=getattr(ns, "artifacts_dir", None),
        deliver=bool(getattr(ns, "deliver", False)),
        plots=bool(getattr(ns, "plots", False)),
    )


def _run_backtest(args: CliArgs) -> dict[str, Any]:
    engine = BacktestEngine(
        cfg_path=args.config,
        candles_path=args.candles,
        artifacts_dir=args.artifacts_dir,
        plots=args.plots,
    )
    result = engine.run()
    if args.output:
        assert engine.report is not None
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(engine.report.to_dict(), f, ensure_ascii=False, indent=2)
    return result.summary


def _run_evaluate(args: CliArgs) -> dict[str, Any]:
    cfg = load_config(args.config)
    candles = load_candles_csv(args.candles or "")
    if not args.deliver:
        signal = evaluate(cfg.strategy, candles)
        return {
            "type": signal.type.value,
            "reason": signal.reason,
            "confidence": signal.confidence,
            "stop_loss": signal.stop_loss,
            "take_profit": signal.take_profit,
            "time_to_expire": signal.time_to_expire,
        }

    ledger = SqliteLedger(cfg.ledger.path) if cfg.ledger.enabled else None
    try:
        store = ledger if ledger is not None else InMemorySignalStore()
        monitor = StrategyMonitor(SignalDispatcher.from_config(cfg.delivery, store), ledger=ledger)
        res = monitor.run_cycle(cfg.user_id, cfg.strategy_id, cfg.strategy, candles, symbol=cfg.symbol)
    finally:
        if ledger is not None:
            ledger.close()
    return {
        "type": res.signal.type.value if res.signal else None,
        "reason": res.signal.reason if res.signal else None,
        "status": res.status.value,
        "events": list(res.events),
    }


def main(argv: list[str] | None = None) -> Any:
    """程序主入口，返回子命令结果（通常为 dict）。"""
    args = parse_args(argv)

    if args.task == "backtest":
        out = _run_backtest(args)
        print(json.dumps(out, ensure_ascii=False, indent=2, default=str))
        return out

    if args.task == "evaluate":
        out = _run_evaluate(args)
        print(json.dumps(out, ensure_ascii=False, indent=2, default=str))
        return out

    if args.task == "test":
        import pytest

        return pytest.main(["-q"])

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
