"""因子注册表：字符串 -> 因子实现。

未知的因子名、分量或参数名一律抛 ConfigurationError，不静默回退默认值。
"""

from __future__ import annotations

import difflib
import inspect
import json
from typing import Any, Mapping

import pandas as pd

from algo.factors.atr import ATRFactor
from algo.factors.base import Factor
from algo.factors.ema import EMAFactor
from algo.factors.generic import INDICATORS, IndicatorFactor, indicator_param_names
from algo.factors.rsi import RSIFactor
from shared.errors import ConfigurationError

_REGISTRY: dict[str, type] = {}

# dataclass 因子里由实现自己填充的字段
_INTERNAL_FIELDS = {"self", "name", "params"}


def register_factor(name: str, cls: type) -> None:
    _REGISTRY[name] = cls


def available_factors() -> list[str]:
    return sorted(set(_REGISTRY) | set(INDICATORS))


def _unknown_name(kind: str, name: str, choices: list[str]) -> ConfigurationError:
    msg = f"Unknown {kind}: {name}"
    close = difflib.get_close_matches(name, choices, n=1)
    if close:
        msg += f" (did you mean '{close[0]}'?)"
    return ConfigurationError(msg)


def _check_param_names(name: str, params: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(params) - allowed)
    if not unknown:
        return
    hints = []
    for key in unknown:
        close = difflib.get_close_matches(key, sorted(allowed), n=1)
        hints.append(f"{key} (did you mean '{close[0]}'?)" if close else key)
    raise ConfigurationError(f"Unknown params for factor '{name}': {', '.join(hints)}")


def _init_param_names(cls: type) -> set[str]:
    sig = inspect.signature(cls.__init__)
    return {p for p in sig.parameters if p not in _INTERNAL_FIELDS}


def factor_cache_key(name: str, params: Mapping[str, Any] | None = None, component: str | None = None) -> str:
    """指标缓存键：类型 + 参数（排序后序列化）+ 分量。"""
    payload = json.dumps(dict(params or {}), sort_keys=True, default=str)
    return f"{name}:{component or ''}:{payload}"


def build_factor(name: str, params: Mapping[str, Any] | None = None, component: str | None = None) -> Factor:
    """按名称构建单个因子。

    已注册的专用实现（ema/rsi/atr）优先；其余名称走 `IndicatorFactor`。
    """
    params = dict(params or {})
    if name in _REGISTRY:
        cls = _REGISTRY[name]
        if component is not None:
            raise ConfigurationError(f"Factor '{name}' has a single output")
        _check_param_names(name, params, _init_param_names(cls))
        try:
            return cls(**params)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid params for factor '{name}': {exc}") from exc
    if name in INDICATORS:
        _check_param_names(name, params, indicator_param_names(name))
        try:
            return IndicatorFactor(indicator=name, component=component, params=params)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
    raise _unknown_name("factor", name, available_factors())


def check_factor(name: str, params: Mapping[str, Any] | None = None, component: str | None = None) -> None:
    """策略激活时校验指标引用：构建后在一小段常数序列上试算一次。

    参数值错误（周期非正、MACD fast >= slow 等）在这里暴露，而不是等到评估时。
    """
    factor = build_factor(name, params, component)
    frame = pd.DataFrame(
        {col: [1.0, 1.0, 1.0] for col in ("open", "high", "low", "close", "volume")}
    )
    try:
        factor.compute(frame)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid params for factor '{name}': {exc}") from exc


# 默认注册
register_factor("ema", EMAFactor)
register_factor("rsi", RSIFactor)
register_factor("atr", ATRFactor)
