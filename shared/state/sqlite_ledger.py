"""SQLite 本地账本。

目标
----
- 信号去重跨进程生效：signals 表以信号 hash 为主键，重复插入即 PersistenceConflict；
- 回测交易/报告、持仓事件可追溯。

设计
----
- SQLite，append-only（signals 只更新 status）；
- `sqlite3.IntegrityError` -> PersistenceConflict，`sqlite3.OperationalError`（锁冲突等）
  -> PersistenceTransientError，交给投递层重试。
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from shared.errors import PersistenceConflict, PersistenceTransientError
from shared.models.models import BacktestReport, SignalRecord, SignalStatus, SignalType, Trade


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(obj: Any) -> str:
    if is_dataclass(obj):
        obj = asdict(obj)  # type: ignore
    return json.dumps(obj, ensure_ascii=False, default=str)


class SqliteLedger:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SqliteLedger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS signals (
              hash TEXT PRIMARY KEY,
              strategy_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              signal_type TEXT NOT NULL,
              candle_close_time TEXT NOT NULL,
              reason TEXT NOT NULL,
              confidence REAL NOT NULL,
              status TEXT NOT NULL,
              created_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              side TEXT NOT NULL,
              entry_time TEXT NOT NULL,
              exit_time TEXT NOT NULL,
              entry_price REAL NOT NULL,
              exit_price REAL NOT NULL,
              quantity REAL NOT NULL,
              profit REAL NOT NULL,
              exit_reason TEXT NOT NULL,
              raw_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reports (
              run_id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              final_balance REAL NOT NULL,
              total_return_pct REAL NOT NULL,
              complete INTEGER NOT NULL,
              raw_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS position_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              strategy_id TEXT NOT NULL,
              event TEXT NOT NULL,
              ts TEXT NOT NULL,
              raw_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_run ON trades(run_id);")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.OperationalError as exc:
                raise PersistenceTransientError(str(exc)) from exc

    # ---- signals ----

    def insert_signal(self, record: SignalRecord) -> None:
        """插入信号记录；hash 已存在时抛 PersistenceConflict。"""
        try:
            self._execute(
                """
                INSERT INTO signals (
                  hash, strategy_id, user_id, signal_type, candle_close_time,
                  reason, confidence, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record.hash,
                    record.strategy_id,
                    record.user_id,
                    record.signal_type.value,
                    record.candle_close_time.isoformat(),
                    record.reason,
                    float(record.confidence),
                    record.status.value,
                    _utc_now_iso(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise PersistenceConflict(record.hash) from exc

    def mark_delivered(self, signal_hash: str) -> None:
        self._execute(
            "UPDATE signals SET status = ? WHERE hash = ?;",
            (SignalStatus.DELIVERED.value, signal_hash),
        )

    def get_signal(self, signal_hash: str) -> SignalRecord | None:
        row = self._execute(
            """
            SELECT hash, strategy_id, user_id, signal_type, candle_close_time, reason, confidence, status
            FROM signals WHERE hash = ? LIMIT 1;
            """,
            (signal_hash,),
        ).fetchone()
        if row is None:
            return None
        return SignalRecord(
            hash=row[0],
            strategy_id=row[1],
            user_id=row[2],
            signal_type=SignalType(row[3]),
            candle_close_time=datetime.fromisoformat(row[4]),
            reason=row[5],
            confidence=float(row[6]),
            status=SignalStatus(row[7]),
        )

    def count_signals(self) -> int:
        return int(self._execute("SELECT COUNT(*) FROM signals;").fetchone()[0])

    # ---- backtest ----

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """显式事务：块内全部成功才提交，任一失败整体回滚。"""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.OperationalError as exc:
                raise PersistenceTransientError(str(exc)) from exc
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise
            self._conn.execute("COMMIT;")

    @staticmethod
    def _trade_rows(run_id: str, trades: Iterable[Trade]) -> list[tuple]:
        return [
            (
                run_id,
                t.type.value,
                t.entry_time.isoformat(),
                t.exit_time.isoformat(),
                float(t.entry_price),
                float(t.exit_price),
                float(t.quantity),
                float(t.profit),
                t.exit_reason,
                _json_dumps(t.to_dict()),
            )
            for t in trades
        ]

    def insert_report(self, run_id: str, report: BacktestReport) -> None:
        """在同一事务中保存回测报告及其交易；同一 run_id 重复保存抛 PersistenceConflict。"""
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO reports (run_id, created_at, final_balance, total_return_pct, complete, raw_json)
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    (
                        run_id,
                        _utc_now_iso(),
                        float(report.final_balance),
                        float(report.total_return_pct),
                        1 if report.complete else 0,
                        _json_dumps(report.to_dict()),
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO trades (
                      run_id, side, entry_time, exit_time, entry_price, exit_price,
                      quantity, profit, exit_reason, raw_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    self._trade_rows(run_id, report.trades),
                )
            except sqlite3.IntegrityError as exc:
                raise PersistenceConflict(run_id) from exc
            except sqlite3.OperationalError as exc:
                raise PersistenceTransientError(str(exc)) from exc

    def load_report(self, run_id: str) -> dict[str, Any] | None:
        row = self._execute("SELECT raw_json FROM reports WHERE run_id = ?;", (run_id,)).fetchone()
        return None if row is None else json.loads(row[0])

    def iter_trades(self, run_id: str) -> Iterable[dict[str, Any]]:
        cur = self._execute(
            "SELECT raw_json FROM trades WHERE run_id = ? ORDER BY id ASC;",
            (run_id,),
        )
        for row in cur.fetchall():
            yield json.loads(row[0])

    # ---- positions ----

    def append_position_event(self, *, user_id: str, strategy_id: str, event: str, payload: Any) -> None:
        self._execute(
            """
            INSERT INTO position_events (user_id, strategy_id, event, ts, raw_json)
            VALUES (?, ?, ?, ?, ?);
            """,
            (user_id, strategy_id, event, _utc_now_iso(), _json_dumps(payload)),
        )

    def iter_position_events(self, user_id: str, strategy_id: str) -> Iterable[dict[str, Any]]:
        cur = self._execute(
            """
            SELECT event, ts, raw_json FROM position_events
            WHERE user_id = ? AND strategy_id = ? ORDER BY id ASC;
            """,
            (user_id, strategy_id),
        )
        for event, ts, raw in cur.fetchall():
            yield {"event": event, "ts": ts, "payload": json.loads(raw)}
