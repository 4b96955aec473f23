"""信号记录存储。

SignalStore 协议（SqliteLedger 同样满足）：
- insert_signal(record)：hash 已存在抛 PersistenceConflict；
- mark_delivered(hash)；
- get_signal(hash)。

InMemorySignalStore 用一把锁实现 "检查并插入" 的原子语义，
并发写入同一 hash 时恰好一个成功。
"""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Protocol

from shared.errors import PersistenceConflict
from shared.models.models import PositionState, SignalRecord, SignalStatus


class SignalStore(Protocol):
    def insert_signal(self, record: SignalRecord) -> None:
        ...

    def mark_delivered(self, signal_hash: str) -> None:
        ...

    def get_signal(self, signal_hash: str) -> SignalRecord | None:
        ...


class InMemorySignalStore:
    def __init__(self):
        self._records: dict[str, SignalRecord] = {}
        self._lock = threading.Lock()

    def insert_signal(self, record: SignalRecord) -> None:
        with self._lock:
            if record.hash in self._records:
                raise PersistenceConflict(record.hash)
            self._records[record.hash] = replace(record)

    def mark_delivered(self, signal_hash: str) -> None:
        with self._lock:
            rec = self._records.get(signal_hash)
            if rec is not None:
                rec.status = SignalStatus.DELIVERED

    def get_signal(self, signal_hash: str) -> SignalRecord | None:
        with self._lock:
            rec = self._records.get(signal_hash)
            return None if rec is None else replace(rec)

    def count_signals(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryPositionStore:
    """(user_id, strategy_id) -> PositionState。

    load 返回副本，只有 save 才会改变存储中的持仓。
    """

    def __init__(self):
        self._positions: dict[tuple[str, str], PositionState] = {}
        self._lock = threading.Lock()

    def load(self, user_id: str, strategy_id: str) -> PositionState:
        with self._lock:
            position = self._positions.get((user_id, strategy_id))
        return copy.deepcopy(position) if position is not None else PositionState.flat()

    def save(self, user_id: str, strategy_id: str, position: PositionState) -> None:
        with self._lock:
            self._positions[(user_id, strategy_id)] = copy.deepcopy(position)
