"""错误分类。

- InsufficientDataError / InvalidIndicatorValue：评估周期内可恢复，由评估层转为 hold 信号；
- PersistenceConflict：重复的信号哈希，视为成功（幂等）；
- PersistenceTransientError：可重试，重试耗尽后作为投递失败上报；
- ChannelDeliveryError：单通道失败，只记录日志，不影响其他通道；
- ConfigurationError：策略配置非法，激活时立即失败。
"""

from __future__ import annotations

import math


class SignalEngineError(Exception):
    """信号引擎异常基类。"""


class ConfigurationError(SignalEngineError, ValueError):
    """策略/系统配置非法。"""


class InsufficientDataError(SignalEngineError):
    """K 线数量不足以完成指标预热。"""

    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"insufficient data: need {self.required} candles, got {self.available}")


class InvalidIndicatorValue(SignalEngineError):
    """指标读数为 NaN/Inf 或超出合法范围。"""

    def __init__(self, indicator: str, value: float | None):
        self.indicator = str(indicator)
        self.value = value
        super().__init__(f"invalid indicator value: {self.indicator}={value}")


class PersistenceConflict(SignalEngineError):
    """唯一键冲突（重复信号哈希）。"""

    def __init__(self, key: str):
        self.key = str(key)
        super().__init__(f"duplicate key: {self.key}")


class PersistenceTransientError(SignalEngineError):
    """持久化暂时性失败（可重试）。"""


class ChannelDeliveryError(SignalEngineError):
    """通知通道投递失败。"""

    def __init__(self, channel: str, message: str):
        self.channel = str(channel)
        super().__init__(f"[{self.channel}] {message}")


def require_finite(indicator: str, value: float | None) -> float:
    """读取指标值；非有限值直接抛 InvalidIndicatorValue。"""
    if value is None:
        raise InvalidIndicatorValue(indicator, value)
    val = float(value)
    if math.isnan(val) or math.isinf(val):
        raise InvalidIndicatorValue(indicator, val)
    return val
