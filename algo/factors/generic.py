"""通用指标因子：把 `algo.factors` 下的纯函数包装成 DataFrame 因子。

多输出指标（MACD、布林带、ADX……）通过 `component` 选择其中一条线。
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
import pandas as pd

from algo.factors import composite, momentum, moving_average, trend, volatility, volume


@dataclass(frozen=True)
class IndicatorSpec:
    fn: Callable[..., Any]
    inputs: tuple[str, ...]
    components: tuple[str, ...] = ()


def _composite_score(
    high,
    low,
    close,
    rsi_period: int = 14,
    trend_fast: int = 10,
    trend_slow: int = 21,
    bb_period: int = 20,
    bb_std: float = 2.0,
    rs_period: int = 14,
    smoothing: int = 5,
):
    return composite.composite_score(
        high,
        low,
        close,
        rsi_period=rsi_period,
        trend_fast=trend_fast,
        trend_slow=trend_slow,
        bb_period=bb_period,
        bb_std=bb_std,
        rs_period=rs_period,
        smoothing=smoothing,
    ).score


INDICATORS: dict[str, IndicatorSpec] = {
    "sma": IndicatorSpec(moving_average.sma, ("close",)),
    "wma": IndicatorSpec(moving_average.wma, ("close",)),
    "vwma": IndicatorSpec(moving_average.vwma, ("close", "volume")),
    "macd": IndicatorSpec(momentum.macd, ("close",), ("macd", "signal", "histogram")),
    "stochastic": IndicatorSpec(momentum.stochastic, ("high", "low", "close"), ("k", "d")),
    "stoch_rsi": IndicatorSpec(momentum.stoch_rsi, ("close",), ("k", "d")),
    "cci": IndicatorSpec(momentum.cci, ("high", "low", "close")),
    "williams_r": IndicatorSpec(momentum.williams_r, ("high", "low", "close")),
    "mfi": IndicatorSpec(momentum.mfi, ("high", "low", "close", "volume")),
    "momentum": IndicatorSpec(momentum.momentum, ("close",)),
    "roc": IndicatorSpec(momentum.roc, ("close",)),
    "kdj": IndicatorSpec(momentum.kdj, ("high", "low", "close"), ("k", "d", "j")),
    "bollinger": IndicatorSpec(volatility.bollinger_bands, ("close",), ("upper", "middle", "lower")),
    "percent_b": IndicatorSpec(volatility.percent_b, ("close",)),
    "bandwidth": IndicatorSpec(volatility.bandwidth, ("close",)),
    "adx": IndicatorSpec(trend.adx, ("high", "low", "close"), ("adx", "plus_di", "minus_di")),
    "parabolic_sar": IndicatorSpec(trend.parabolic_sar, ("high", "low")),
    "supertrend": IndicatorSpec(trend.supertrend, ("high", "low", "close"), ("line", "direction")),
    # chikou 是未来收盘价，不对外暴露
    "ichimoku": IndicatorSpec(trend.ichimoku, ("high", "low", "close"), ("tenkan", "kijun", "senkou_a", "senkou_b")),
    "obv": IndicatorSpec(volume.obv, ("close", "volume")),
    "ad_line": IndicatorSpec(volume.ad_line, ("high", "low", "close", "volume")),
    "cmf": IndicatorSpec(volume.cmf, ("high", "low", "close", "volume")),
    "vwap": IndicatorSpec(volume.vwap, ("high", "low", "close", "volume")),
    "anchored_vwap": IndicatorSpec(volume.anchored_vwap, ("high", "low", "close", "volume")),
    "average_volume": IndicatorSpec(volume.average_volume, ("volume",)),
    "composite_score": IndicatorSpec(_composite_score, ("high", "low", "close")),
}


def indicator_param_names(indicator: str) -> set[str]:
    """指标函数可配置的关键字参数（去掉前面的序列输入）。"""
    spec = INDICATORS[indicator]
    names = list(inspect.signature(spec.fn).parameters)
    return set(names[len(spec.inputs):])


@dataclass(frozen=True)
class IndicatorFactor:
    """按名称计算任意已登记的指标。"""

    indicator: str
    component: str | None = None
    out_col: str | None = None
    name: str = "indicator"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        spec = INDICATORS.get(self.indicator)
        if spec is None:
            raise ValueError(f"Unknown indicator: {self.indicator}")
        if spec.components:
            component = self.component or spec.components[0]
            if component not in spec.components:
                raise ValueError(
                    f"Indicator '{self.indicator}' has no component '{component}' "
                    f"(available: {', '.join(spec.components)})"
                )
            object.__setattr__(self, "component", component)
        elif self.component is not None:
            raise ValueError(f"Indicator '{self.indicator}' has a single output")
        unknown = sorted(set(self.params) - indicator_param_names(self.indicator))
        if unknown:
            raise ValueError(f"Indicator '{self.indicator}' does not accept params: {', '.join(unknown)}")
        object.__setattr__(self, "name", self.indicator)

    @property
    def output_column(self) -> str:
        if self.out_col:
            return self.out_col
        parts = [self.indicator]
        if self.component:
            parts.append(self.component)
        parts.extend(f"{k}{self.params[k]}" for k in sorted(self.params))
        return "_".join(str(p) for p in parts)

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        spec = INDICATORS[self.indicator]
        for col in spec.inputs:
            if col not in df.columns:
                raise ValueError(f"IndicatorFactor({self.indicator}) requires column: {col}")
        args = [df[col].to_numpy(dtype=float) for col in spec.inputs]
        result = spec.fn(*args, **self.params)
        if spec.components:
            result = getattr(result, str(self.component))
        df[self.output_column] = np.asarray(result, dtype=float)
        return df
