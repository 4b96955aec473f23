"""策略评估公共设施：K 线序列 + 指标缓存。

评估函数签名统一为 `evaluate(series, index, config, position) -> Signal`：
- 只读取 `index` 及之前的数据；
- 指标全部是因果计算（位置 i 的值只依赖 <= i 的输入），
  因此回测可以对整段序列只算一次指标，再逐根读取，结果与逐根截断重算一致。
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol, Sequence

import numpy as np
import pandas as pd

from algo.factors.momentum import rsi
from algo.factors.moving_average import ema, sma
from algo.factors.registry import build_factor, factor_cache_key
from algo.factors.trend import adx
from algo.factors.volatility import atr
from shared.errors import InsufficientDataError, require_finite
from shared.models.models import Candle, PositionState, Signal
from shared.utils.candles import candles_to_frame


class CandleSeries:
    """一次评估/回测共享的 K 线序列，按 key 缓存已计算的指标。"""

    def __init__(self, candles: Sequence[Candle], benchmark: Sequence[float] | None = None):
        self.candles: list[Candle] = list(candles)
        self.open = np.array([c.open for c in self.candles], dtype=float)
        self.high = np.array([c.high for c in self.candles], dtype=float)
        self.low = np.array([c.low for c in self.candles], dtype=float)
        self.close = np.array([c.close for c in self.candles], dtype=float)
        self.volume = np.array([c.volume for c in self.candles], dtype=float)
        if benchmark is not None and len(benchmark) != len(self.candles):
            raise ValueError("benchmark series must align with candles")
        self.benchmark = None if benchmark is None else np.array(benchmark, dtype=float)
        self._cache: dict[str, Any] = {}
        self._frame: pd.DataFrame | None = None

    def __len__(self) -> int:
        return len(self.candles)

    def cached(self, key: str, fn: Callable[[], Any]) -> Any:
        if key not in self._cache:
            self._cache[key] = fn()
        return self._cache[key]

    def ema(self, period: int) -> np.ndarray:
        return self.cached(f"ema:{period}", lambda: ema(self.close, period))

    def sma(self, period: int) -> np.ndarray:
        return self.cached(f"sma:{period}", lambda: sma(self.close, period))

    def rsi(self, period: int) -> np.ndarray:
        return self.cached(f"rsi:{period}", lambda: rsi(self.close, period))

    def atr(self, period: int) -> np.ndarray:
        return self.cached(f"atr:{period}", lambda: atr(self.high, self.low, self.close, period))

    def adx(self, period: int) -> np.ndarray:
        return self.cached(f"adx:{period}", lambda: adx(self.high, self.low, self.close, period).adx)

    def average_volume(self, period: int) -> np.ndarray:
        return self.cached(f"avgvol:{period}", lambda: sma(self.volume, period))

    def average_atr(self, atr_period: int, lookback: int) -> np.ndarray:
        return self.cached(f"avgatr:{atr_period}:{lookback}", lambda: sma(self.atr(atr_period), lookback))

    @property
    def frame(self) -> pd.DataFrame:
        if self._frame is None:
            self._frame = candles_to_frame(self.candles)
        return self._frame

    def price(self, source: str = "close") -> np.ndarray:
        arrays = {
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }
        if source not in arrays:
            raise ValueError(f"Unknown price source: {source}")
        return arrays[source]

    def factor(self, name: str, params: Mapping[str, Any] | None = None, component: str | None = None) -> np.ndarray:
        """通过因子注册表计算任意指标列（按 类型+参数+分量 缓存）。"""
        key = factor_cache_key(name, params, component)

        def _compute() -> np.ndarray:
            factor = build_factor(name, params, component)
            out = factor.compute(self.frame.copy())
            return out[factor.output_column].to_numpy(dtype=float)

        return self.cached(key, _compute)


class Evaluator(Protocol):
    def __call__(
        self,
        series: CandleSeries,
        index: int,
        config: Any,
        position: PositionState,
    ) -> Signal:
        ...


def require_candles(index: int, required: int) -> None:
    """可用 K 线（0..index）少于 required 时抛 InsufficientDataError。"""
    available = index + 1
    if available < required:
        raise InsufficientDataError(required, available)


def value_at(values: np.ndarray, index: int, name: str) -> float:
    """读取指标在 index 处的值，越界或非有限值都视为非法读数。"""
    if index < 0 or index >= len(values):
        raise InsufficientDataError(index + 1, len(values))
    return require_finite(name, values[index])

