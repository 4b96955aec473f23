"""策略注册表：配置类型 -> 评估函数。

`evaluate` 是对外的统一入口：
- 数据不足返回 hold("insufficient data")，不抛异常；
- 指标读数非法（NaN/Inf）记录 warning（带指标名）后返回 hold；
- 配置非法在 `parse_strategy_config` 阶段就抛 ConfigurationError。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from algo.strategy import composite_sentiment, condition_tree, ema_scalping, range_reentry
from algo.strategy.base import CandleSeries, Evaluator
from shared.config.schema import (
    CompositeSentimentConfig,
    ConditionTreeConfig,
    EmaCrossoverScalpingConfig,
    RangeReentryConfig,
    parse_strategy_config,
)
from shared.errors import InsufficientDataError, InvalidIndicatorValue
from shared.models.models import Candle, PositionState, Signal
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("strategy-registry")


@dataclass(frozen=True)
class StrategyEntry:
    evaluator: Evaluator
    required_candles: Callable[[Any], int]


_REGISTRY: dict[type, StrategyEntry] = {}


def register_strategy(config_cls: type, evaluator: Evaluator, required_candles: Callable[[Any], int]) -> None:
    _REGISTRY[config_cls] = StrategyEntry(evaluator, required_candles)


def get_strategy_entry(config: Any) -> StrategyEntry:
    entry = _REGISTRY.get(type(config))
    if entry is None:
        raise ValueError(f"Unknown strategy config: {type(config).__name__}")
    return entry


def required_candles(config: Any) -> int:
    cfg = parse_strategy_config(config)
    return get_strategy_entry(cfg).required_candles(cfg)


def evaluate(
    strategy_config: Any,
    candles: Sequence[Candle] | None = None,
    position_state: PositionState | None = None,
    *,
    index: int | None = None,
    series: CandleSeries | None = None,
) -> Signal:
    """评估一次策略，返回 Signal（只读 candles[: index + 1]）。

    Parameters
    ----------
    strategy_config:
        策略配置对象或 dict（带 kind）。
    candles:
        按时间升序的 K 线；传入 series 时可省略。
    position_state:
        当前持仓，None 视为空仓。评估本身不修改它。
    index:
        评估位置，默认最后一根。
    series:
        复用已有 CandleSeries（回测中共享指标缓存）。
    """
    cfg = parse_strategy_config(strategy_config)
    entry = get_strategy_entry(cfg)
    if series is None:
        series = CandleSeries(candles or [])
    if index is None:
        index = len(series) - 1
    position = position_state if position_state is not None else PositionState.flat()

    try:
        return entry.evaluator(series, index, cfg, position)
    except InsufficientDataError as exc:
        return Signal.hold("insufficient data", required=exc.required, available=exc.available)
    except InvalidIndicatorValue as exc:
        _LOGGER.warning("%s 指标值非法：%s=%r，返回 hold", cfg.name or cfg.kind, exc.indicator, exc.value)
        return Signal.hold(f"invalid indicator value: {exc.indicator}", indicator=exc.indicator)


def available_strategies() -> Mapping[str, type]:
    return {getattr(cls, "model_fields")["kind"].default: cls for cls in _REGISTRY}


# 默认注册
register_strategy(EmaCrossoverScalpingConfig, ema_scalping.evaluate_ema_scalping, ema_scalping.required_candles)
register_strategy(
    CompositeSentimentConfig,
    composite_sentiment.evaluate_composite_sentiment,
    composite_sentiment.required_candles,
)
register_strategy(RangeReentryConfig, range_reentry.evaluate_range_reentry, range_reentry.required_candles)
register_strategy(ConditionTreeConfig, condition_tree.evaluate_condition_tree, condition_tree.required_candles)
