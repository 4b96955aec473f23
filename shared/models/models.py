"""核心数据结构：Candle/Signal/PositionState/Trade/BacktestReport/SignalRecord。"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SignalType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def entry_signal(self) -> SignalType:
        return SignalType.BUY if self is Side.LONG else SignalType.SELL

    @property
    def exit_signal(self) -> SignalType:
        return SignalType.SELL if self is Side.LONG else SignalType.BUY


class SignalStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


class DeliveryStatus(str, Enum):
    """recordSignal 的返回值。"""

    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Candle:
    """K 线数据（不可变）。"""

    open_time: datetime
    close_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self):
        if self.open_time >= self.close_time:
            raise ValueError("Candle open_time must be < close_time")
        prices = (self.open, self.high, self.low, self.close)
        # 含 NaN/Inf 的 K 线允许构造，由评估层作为非法指标输入处理
        if all(math.isfinite(p) for p in prices):
            if not (self.high >= max(self.open, self.close) >= min(self.open, self.close) >= self.low):
                raise ValueError(
                    f"Candle OHLC invariant violated: o={self.open} h={self.high} l={self.low} c={self.close}"
                )


@dataclass(frozen=True)
class Signal:
    """评估结果（值对象，每次评估重新生成）。"""

    type: SignalType
    reason: str
    stop_loss: float | None = None
    take_profit: float | None = None
    confidence: float = 0.0
    time_to_expire: int | None = None  # 分钟
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def hold(cls, reason: str, **metadata: Any) -> "Signal":
        return cls(type=SignalType.HOLD, reason=reason, metadata=dict(metadata))

    @property
    def is_hold(self) -> bool:
        return self.type is SignalType.HOLD


@dataclass(frozen=True)
class PartialClose:
    """部分平仓记录。"""

    level: float          # 触发的盈利百分比
    closed_size: float
    price: float
    profit: float
    time: datetime


@dataclass
class PositionState:
    """单个 (user, strategy) 的持仓状态。

    只允许 Position Lifecycle 修改；外部协作者负责在评估周期之间持久化。
    """

    is_open: bool = False
    side: Side | None = None
    entry_price: float = 0.0
    entry_time: datetime | None = None
    size: float = 0.0
    initial_size: float = 0.0
    entry_fee: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None
    range_high: float | None = None
    range_low: float | None = None
    best_price: float | None = None
    trail_distance: float | None = None
    trailing_active: bool = False
    last_signal_time: datetime | None = None
    partial_closes: list[PartialClose] = field(default_factory=list)

    @classmethod
    def flat(cls) -> "PositionState":
        return cls()


@dataclass(frozen=True)
class Trade:
    """一笔完整交易（入场到最终出场）。"""

    type: Side
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    quantity: float
    profit: float
    exit_reason: str
    fees: float = 0.0
    profit_pct: float = 0.0
    margin: float | None = None  # 仅合约模式：名义价值 / 杠杆

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["entry_time"] = self.entry_time.isoformat()
        data["exit_time"] = self.exit_time.isoformat()
        return data


@dataclass(frozen=True)
class BalancePoint:
    time: datetime
    balance: float


@dataclass(frozen=True)
class BacktestReport:
    """单次回测报告（只读输出）。"""

    initial_balance: float
    final_balance: float
    total_return_pct: float
    trades: tuple[Trade, ...]
    win_rate: float
    profit_factor: float
    max_drawdown_pct: float
    avg_win: float
    avg_loss: float
    balance_history: tuple[BalancePoint, ...]
    complete: bool = True
    winning_trades: int = 0
    losing_trades: int = 0

    @property
    def total_trades(self) -> int:
        return len(self.trades)

    def to_dict(self) -> dict[str, Any]:
        return {
            "initial_balance": self.initial_balance,
            "final_balance": self.final_balance,
            "total_return_pct": self.total_return_pct,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
            "max_drawdown_pct": self.max_drawdown_pct,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "complete": self.complete,
            "trades": [t.to_dict() for t in self.trades],
            "balance_history": [
                {"time": p.time.isoformat(), "balance": p.balance} for p in self.balance_history
            ],
        }


@dataclass
class SignalRecord:
    """去重记录：hash 为唯一键。"""

    hash: str
    strategy_id: str
    user_id: str
    signal_type: SignalType
    candle_close_time: datetime
    reason: str = ""
    confidence: float = 0.0
    status: SignalStatus = SignalStatus.PENDING
