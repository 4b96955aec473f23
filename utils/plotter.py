from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Tuple

from shared.models.models import BalancePoint


def _require_matplotlib():
    try:
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError("matplotlib 未安装，无法绘图。请先安装 matplotlib（pip install .[plot]）。") from exc
    return plt


def _to_series(history: Iterable[BalancePoint]) -> Tuple[List[datetime], List[float]]:
    points = sorted(history, key=lambda p: p.time)
    return [p.time for p in points], [p.balance for p in points]


def _to_mpl_time(xs: List[datetime]) -> List[float]:
    # matplotlib 支持 datetime，但类型检查可能提示不兼容，转为数字避免告警
    import matplotlib.dates as mdates  # type: ignore

    return [float(mdates.date2num(x)) for x in xs]


def _finish(fig, ax, plt, title: str, ylabel: str, save_path: str | None):
    import matplotlib.dates as mdates  # type: ignore

    locator = mdates.AutoDateLocator()
    ax.xaxis.set_major_locator(locator)
    ax.xaxis.set_major_formatter(mdates.AutoDateFormatter(locator))
    fig.autofmt_xdate()
    ax.set_title(title)
    ax.set_xlabel("Time")
    ax.set_ylabel(ylabel)
    ax.grid(True, alpha=0.3)
    ax.legend()
    if save_path:
        path = Path(save_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(str(path), bbox_inches="tight")
        plt.close(fig)
    return fig


def plot_balance_curve(history: Iterable[BalancePoint], save_path: str | None = None):
    """绘制余额曲线，save_path 不传则仅返回 fig。"""
    plt = _require_matplotlib()
    xs_dt, ys = _to_series(history)
    if not ys:
        return None
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.plot(_to_mpl_time(xs_dt), ys, label="Balance")
    return _finish(fig, ax, plt, "Balance", "Balance", save_path)


def plot_drawdown(history: Iterable[BalancePoint], save_path: str | None = None):
    """绘制回撤曲线（百分比，正数表示回撤）。"""
    plt = _require_matplotlib()
    xs_dt, ys = _to_series(history)
    if not ys:
        return None

    drawdowns: List[float] = []
    peak = ys[0]
    for v in ys:
        peak = max(peak, v)
        drawdowns.append((peak - v) / peak * 100.0 if peak else 0.0)

    fig, ax = plt.subplots(figsize=(10, 3))
    ax.fill_between(_to_mpl_time(xs_dt), drawdowns, color="tomato", alpha=0.4, label="Drawdown %")
    ax.invert_yaxis()
    return _finish(fig, ax, plt, "Drawdown", "Drawdown %", save_path)
