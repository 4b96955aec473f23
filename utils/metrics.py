"""回测绩效指标计算。"""

from __future__ import annotations

import math
from statistics import mean, median, pstdev
from typing import Iterable, Sequence

from shared.models.models import BalancePoint, Trade


def max_drawdown_pct(balances: Iterable[float]) -> float:
    """最大回撤（百分比）：相对运行峰值的最大跌幅，整个过程取最大值、不重置。

    [100, 120, 90, 130] -> 25.0
    """
    peak: float | None = None
    max_dd = 0.0
    for bal in balances:
        peak = bal if peak is None else max(peak, bal)
        if peak > 0:
            max_dd = max(max_dd, (peak - bal) / peak * 100.0)
    return max_dd


def _annualization_factor(points: Sequence[BalancePoint]) -> float:
    """根据余额点的时间间隔估计 Sharpe 年化因子。"""
    if len(points) < 2:
        return math.sqrt(365)
    deltas = []
    for i in range(1, len(points)):
        dt = (points[i].time - points[i - 1].time).total_seconds()
        if dt > 0:
            deltas.append(dt)
    if not deltas:
        return math.sqrt(365)
    med = median(deltas)
    periods_per_day = 86400 / med if med > 0 else 1
    return math.sqrt(365 * periods_per_day)


def compute_equity_metrics(balance_history: Sequence[BalancePoint]) -> dict:
    """余额曲线指标（总收益 %、最大回撤 %、Sharpe）。"""
    if not balance_history:
        return {"total_return_pct": 0.0, "max_drawdown_pct": 0.0, "sharpe": 0.0}

    points = sorted(balance_history, key=lambda p: p.time)
    initial = points[0].balance
    final = points[-1].balance
    total_return = (final / initial - 1) * 100.0 if initial else 0.0

    returns = []
    for i in range(1, len(points)):
        prev = points[i - 1].balance
        if prev > 0:
            returns.append(points[i].balance / prev - 1)
    sharpe = 0.0
    if returns:
        mu = mean(returns)
        sigma = pstdev(returns) if len(returns) > 1 else 0.0
        sharpe = (mu / sigma) * _annualization_factor(points) if sigma else 0.0

    return {
        "total_return_pct": total_return,
        "max_drawdown_pct": max_drawdown_pct(p.balance for p in balance_history),
        "sharpe": sharpe,
    }


def compute_trade_metrics(trades: Iterable[Trade]) -> dict:
    """交易维度指标。

    - win_rate：盈利笔数 / 总笔数 × 100，无交易为 0；
    - profit_factor：(avg_win × 盈利笔数) / (avg_loss × 亏损笔数)；
      没有亏损时为 0（报告需可序列化为合法 JSON，不出现 inf）；
    - avg_loss 以正数表示。
    """
    wins: list[float] = []
    losses: list[float] = []
    total = 0
    for t in trades:
        total += 1
        if t.profit > 0:
            wins.append(t.profit)
        elif t.profit < 0:
            losses.append(t.profit)

    win_rate = len(wins) / total * 100.0 if total else 0.0
    avg_win = mean(wins) if wins else 0.0
    avg_loss = -mean(losses) if losses else 0.0
    gross_win = avg_win * len(wins)
    gross_loss = avg_loss * len(losses)
    profit_factor = gross_win / gross_loss if gross_loss > 0 else 0.0

    return {
        "total_trades": total,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": win_rate,
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "profit_factor": profit_factor,
        "expectancy": (gross_win - gross_loss) / total if total else 0.0,
    }
