"""K 线序列工具：CSV 读取、DataFrame 转换。"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from shared.models.models import Candle

CANDLE_COLS = ["open_time", "close_time", "open", "high", "low", "close", "volume"]


def parse_dt(val: Any) -> datetime:
    """解析时间：ISO 字符串或秒/毫秒时间戳，统一为 UTC。"""
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    if isinstance(val, pd.Timestamp):
        ts = val.to_pydatetime()
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    text = str(val).strip()
    try:
        if text.replace(".", "", 1).isdigit():
            num = float(text)
            # 大于 1e12 视为毫秒
            if num > 1e12:
                num /= 1000.0
            return datetime.fromtimestamp(num, tz=timezone.utc)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).astimezone(timezone.utc)
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Invalid datetime value: {val}") from exc


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    rows = [
        {
            "open_time": c.open_time,
            "close_time": c.close_time,
            "open": c.open,
            "high": c.high,
            "low": c.low,
            "close": c.close,
            "volume": c.volume,
        }
        for c in candles
    ]
    return pd.DataFrame(rows, columns=CANDLE_COLS)


def frame_to_candles(df: pd.DataFrame) -> list[Candle]:
    missing = [c for c in CANDLE_COLS if c not in df.columns]
    if missing:
        raise ValueError(f"candle frame missing columns: {', '.join(missing)}")
    candles = [
        Candle(
            open_time=parse_dt(row.open_time),
            close_time=parse_dt(row.close_time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]
    return sorted(candles, key=lambda c: c.open_time)


def load_candles_csv(path: str | Path) -> list[Candle]:
    """从 CSV 读取 K 线，列：open_time,close_time,open,high,low,close,volume。"""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Candle file not found: {csv_path}")
    df = pd.read_csv(csv_path, dtype={"open_time": str, "close_time": str})
    return frame_to_candles(df)
