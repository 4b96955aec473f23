"""信号去重哈希。

要求：
- 同一 (strategy, 信号方向, K 线收盘时间) 在重放/重启后可重建（deterministic）；
- 与 user 无关：同一策略同一根 K 线同方向最多一个信号。
"""

from __future__ import annotations

from datetime import datetime, timezone

from utils.hashing import sha256_text


def _normalize_ts(candle_close_time: datetime | int | str) -> str:
    if isinstance(candle_close_time, datetime):
        ts = candle_close_time
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return str(int(round(ts.timestamp() * 1000)))
    return str(candle_close_time)


def make_signal_hash(
    *,
    strategy_id: str,
    signal_type: str,
    candle_close_time: datetime | int | str,
) -> str:
    """计算信号去重哈希（sha256 十六进制）。

    datetime 会统一转换为 UTC 毫秒时间戳，保证不同时区表示得到同一哈希。
    """
    raw = "-".join(
        [
            str(strategy_id),
            str(getattr(signal_type, "value", signal_type)),
            _normalize_ts(candle_close_time),
        ]
    )
    return sha256_text(raw)
