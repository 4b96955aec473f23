"""实时监控周期：加载持仓 → 评估 → 生命周期迁移 → 投递信号。

- 同一 (user, strategy) 的周期在一把锁内串行，避免并发重复开平仓；
- 周期失败按指数退避推迟下一次检查：3 分钟起，每次翻倍，最多 30 分钟；
- 配置错误（ConfigurationError）直接抛出，不参与退避；
- 持仓迁移在快照上进行，投递与事件落库成功后才保存，失败的周期不改变持仓。
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from algo.position.lifecycle import (
    ExitReason,
    apply_partial_close,
    close_position,
    due_partial_levels,
    open_position,
)
from algo.strategy.registry import evaluate
from delivery.channels import SignalNotice
from delivery.dispatcher import SignalDispatcher
from delivery.store import InMemoryPositionStore
from shared.config.schema import parse_strategy_config
from shared.errors import ConfigurationError, PersistenceTransientError
from shared.models.models import Candle, DeliveryStatus, PositionState, Side, Signal, Trade
from shared.state.sqlite_ledger import SqliteLedger
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("monitor")

BASE_BACKOFF_SECS = 180.0
MAX_BACKOFF_SECS = 1800.0


def backoff_delay(failures: int, base: float = BASE_BACKOFF_SECS, cap: float = MAX_BACKOFF_SECS) -> float:
    """连续失败 n 次后的等待秒数：180, 360, 720, ... 上限 1800。"""
    if failures <= 0:
        return 0.0
    return min(cap, base * (2 ** (failures - 1)))


@dataclass(frozen=True)
class CycleResult:
    signal: Signal | None
    status: DeliveryStatus
    events: tuple[str, ...] = ()
    trade: Trade | None = None
    retry_in: float = 0.0


class StrategyMonitor:
    def __init__(
        self,
        dispatcher: SignalDispatcher,
        positions: InMemoryPositionStore | None = None,
        ledger: SqliteLedger | None = None,
        *,
        partial_close_levels: Sequence[float] = (),
        partial_close_fraction: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dispatcher = dispatcher
        self.positions = positions or InMemoryPositionStore()
        self.ledger = ledger
        self.partial_close_levels = list(partial_close_levels)
        self.partial_close_fraction = partial_close_fraction
        self._clock = clock
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._failures: dict[tuple[str, str], int] = {}
        self._next_check: dict[tuple[str, str], float] = {}

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def is_due(self, user_id: str, strategy_id: str) -> bool:
        return self._clock() >= self._next_check.get((user_id, strategy_id), 0.0)

    def run_cycle(
        self,
        user_id: str,
        strategy_id: str,
        config: Any,
        candles: Sequence[Candle],
        *,
        symbol: str = "",
    ) -> CycleResult:
        cfg = parse_strategy_config(config)
        key = (user_id, strategy_id)
        with self._lock_for(key):
            try:
                result = self._cycle(user_id, strategy_id, cfg, candles, symbol)
            except ConfigurationError:
                raise
            except Exception:
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                delay = backoff_delay(failures)
                self._next_check[key] = self._clock() + delay
                _LOGGER.exception("监控周期失败 user=%s strategy=%s，%.0fs 后重试", user_id, strategy_id, delay)
                return CycleResult(signal=None, status=DeliveryStatus.FAILED, retry_in=delay)
            self._failures.pop(key, None)
            self._next_check.pop(key, None)
            return result

    def _cycle(
        self,
        user_id: str,
        strategy_id: str,
        cfg: Any,
        candles: Sequence[Candle],
        symbol: str,
    ) -> CycleResult:
        if not candles:
            return CycleResult(signal=Signal.hold("insufficient data"), status=DeliveryStatus.SKIPPED)
        last = candles[-1]
        # 在快照上迁移；投递与事件落库都成功后才保存，失败时存储中的持仓不变
        position = self.positions.load(user_id, strategy_id)
        signal = evaluate(cfg, candles, position)

        events: list[tuple[str, Any]] = []
        trade: Trade | None = None
        if position.is_open and position.side is not None:
            if not signal.is_hold and signal.type is position.side.exit_signal:
                reason = signal.metadata.get("exit_reason", ExitReason.SIGNAL.value)
                trade = close_position(position, price=last.close, time=last.close_time, reason=reason)
                events.append(("closed", trade.to_dict()))
            else:
                for level in due_partial_levels(position, last.close, self.partial_close_levels):
                    record = apply_partial_close(
                        position,
                        level=level,
                        fraction=self.partial_close_fraction,
                        price=last.close,
                        time=last.close_time,
                    )
                    events.append(("partial_closed", record))
        elif not signal.is_hold:
            side = Side.LONG if signal.type is Side.LONG.entry_signal else Side.SHORT
            open_position(
                position,
                side=side,
                price=last.close,
                time=last.close_time,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
                range_high=signal.metadata.get("range_high"),
                range_low=signal.metadata.get("range_low"),
            )
            events.append(("opened", {"side": side.value, "price": last.close, "time": last.close_time.isoformat()}))

        notice = SignalNotice(
            user_id=user_id,
            strategy_id=strategy_id,
            symbol=symbol,
            price=last.close,
            candle_close_time=last.close_time,
            signal=signal,
            strategy_name=cfg.name,
        )
        # 重试周期里同一信号会被判为 DUPLICATE，持仓迁移照常提交
        status = self.dispatcher.record_signal(notice)
        if status is DeliveryStatus.FAILED:
            raise PersistenceTransientError(
                f"signal not persisted: {signal.type.value} @ {last.close_time.isoformat()}"
            )
        for event, payload in events:
            self._record_event(user_id, strategy_id, event, payload)
        self.positions.save(user_id, strategy_id, position)
        return CycleResult(
            signal=signal,
            status=status,
            events=tuple(event for event, _ in events),
            trade=trade,
        )

    def _record_event(self, user_id: str, strategy_id: str, event: str, payload: Any) -> None:
        _LOGGER.info("持仓事件 %s：user=%s strategy=%s", event, user_id, strategy_id)
        if self.ledger is not None:
            self.ledger.append_position_event(
                user_id=user_id, strategy_id=strategy_id, event=event, payload=payload
            )
