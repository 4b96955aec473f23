"""配置架构定义（Pydantic Schema）。

目标：
- 让策略配置成为“强类型 + 可演进”的边界协议；
- 策略激活阶段尽早失败（ConfigurationError），绝不静默回退到默认值；
- 策略族是封闭的 tagged union（`kind` 判别），评估层按类型穷举分派。
"""

from __future__ import annotations

from datetime import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from algo.factors.registry import check_factor
from shared.errors import ConfigurationError

FilterMode = Literal["block", "confidence_penalty"]


class _StrategyBase(BaseModel):
    """策略配置公共字段。"""
    name: str = ""
    filter_mode: FilterMode = "block"
    # 置信度扣分模式：基础分与下限
    base_confidence: float = Field(default=90.0, ge=0, le=100)
    min_confidence: float = Field(default=50.0, ge=0, le=100)
    allow_short: bool = True
    # 最长持仓时间（秒）；None 表示不做时间出场
    max_position_time: Optional[int] = Field(default=None, gt=0)
    # 预热安全边际（K 线根数）
    safety_margin: int = Field(default=5, ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class EmaCrossoverScalpingConfig(_StrategyBase):
    """EMA 交叉剥头皮。"""
    kind: Literal["ema_crossover_scalping"] = "ema_crossover_scalping"
    fast_ema: int = Field(default=9, gt=0)
    slow_ema: int = Field(default=21, gt=0)
    atr_period: int = Field(default=14, gt=0)
    atr_sl_multiplier: float = Field(default=1.0, gt=0)
    atr_tp_multiplier: float = Field(default=1.5, gt=0)
    max_position_time: Optional[int] = Field(default=900, gt=0)

    use_rsi_filter: bool = False
    rsi_period: int = Field(default=14, gt=0)
    rsi_long_threshold: float = Field(default=40.0, ge=0, le=100)
    rsi_short_threshold: float = Field(default=60.0, ge=0, le=100)

    use_trend_filter: bool = False
    trend_ema_period: int = Field(default=200, gt=0)

    use_volatility_filter: bool = False
    volatility_lookback: int = Field(default=20, gt=0)
    volatility_block_multiplier: float = Field(default=2.0, gt=0)
    volatility_penalty_multiplier: float = Field(default=1.5, gt=0)

    use_volume_filter: bool = False
    volume_lookback: int = Field(default=20, gt=0)
    volume_multiplier: float = Field(default=1.2, gt=0)

    use_liquidity_window: bool = False
    low_liquidity_start_hour: int = Field(default=22, ge=0, le=23)
    low_liquidity_end_hour: int = Field(default=6, ge=0, le=23)

    @model_validator(mode="after")
    def _check_periods(self):
        if self.fast_ema >= self.slow_ema:
            raise ValueError(f"fast_ema ({self.fast_ema}) must be < slow_ema ({self.slow_ema})")
        if self.volatility_penalty_multiplier > self.volatility_block_multiplier:
            raise ValueError("volatility_penalty_multiplier must be <= volatility_block_multiplier")
        return self


class CompositeSentimentConfig(_StrategyBase):
    """综合情绪评分（MSTG）。阈值穿越，无过滤器。"""
    kind: Literal["composite_sentiment"] = "composite_sentiment"
    weight_momentum: float = Field(default=0.25, ge=0, le=1)
    weight_trend: float = Field(default=0.35, ge=0, le=1)
    weight_volatility: float = Field(default=0.20, ge=0, le=1)
    weight_relative: float = Field(default=0.20, ge=0, le=1)

    long_threshold: float = Field(default=30.0, ge=-100, le=100)
    short_threshold: float = Field(default=-30.0, ge=-100, le=100)
    exit_threshold: float = Field(default=0.0, ge=-100, le=100)
    extreme_threshold: float = Field(default=60.0, ge=0, le=100)

    rsi_period: int = Field(default=14, gt=0)
    trend_fast_ema: int = Field(default=10, gt=0)
    trend_slow_ema: int = Field(default=21, gt=0)
    bb_period: int = Field(default=20, gt=0)
    bb_std: float = Field(default=2.0, gt=0)
    relative_strength_period: int = Field(default=14, gt=0)
    smoothing_period: int = Field(default=5, gt=0)
    min_candles: int = Field(default=50, gt=0)

    stop_loss_pct: Optional[float] = Field(default=None, gt=0)
    take_profit_pct: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_weights(self):
        total = self.weight_momentum + self.weight_trend + self.weight_volatility + self.weight_relative
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"composite weights must sum to 1, got {total:.4f}")
        if self.short_threshold >= self.long_threshold:
            raise ValueError("short_threshold must be < long_threshold")
        if self.trend_fast_ema >= self.trend_slow_ema:
            raise ValueError("trend_fast_ema must be < trend_slow_ema")
        return self


class RangeReentryConfig(_StrategyBase):
    """时段区间重入（默认纽约时间 00:00-03:59 的 4h 区间）。"""
    kind: Literal["range_reentry"] = "range_reentry"
    session_start: time = time(0, 0)
    session_end: time = time(3, 59)
    session_timezone: str = "America/New_York"
    risk_reward: float = Field(default=3.0, gt=0)
    # 止损距离 = 区间高度 * stop_range_fraction，止盈距离 = 止损距离 * risk_reward
    stop_range_fraction: float = Field(default=0.5, gt=0)
    retest_tolerance_pct: float = Field(default=0.1, ge=0)
    enable_retest_entry: bool = True
    max_position_time: Optional[int] = Field(default=4 * 3600, gt=0)

    use_adx_filter: bool = True
    adx_period: int = Field(default=14, gt=0)
    adx_threshold: float = Field(default=20.0, ge=0)

    use_rsi_filter: bool = True
    rsi_period: int = Field(default=14, gt=0)
    rsi_lower: float = Field(default=30.0, ge=0, le=100)
    rsi_upper: float = Field(default=70.0, ge=0, le=100)

    use_volume_filter: bool = True
    volume_lookback: int = Field(default=20, gt=0)
    volume_multiplier: float = Field(default=1.2, gt=0)

    @model_validator(mode="after")
    def _check_session(self):
        if self.session_start >= self.session_end:
            raise ValueError(
                f"session_start ({self.session_start}) must be before session_end ({self.session_end})"
            )
        if self.rsi_lower >= self.rsi_upper:
            raise ValueError("rsi_lower must be < rsi_upper")
        try:
            ZoneInfo(self.session_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown session_timezone: {self.session_timezone}") from exc
        return self


ConditionOperator = Literal[
    "greater_than",
    "less_than",
    "equals",
    "between",
    "crosses_above",
    "crosses_below",
    "indicator_comparison",
    "breakout_above",
    "breakout_below",
]

PRICE_SOURCES = ("open", "high", "low", "close", "volume")


class IndicatorRef(BaseModel):
    """条件中引用的指标：type + params（+ 多输出指标的 component）。

    type = "price" 时直接读取 K 线列，`params.source` 取 open/high/low/close/volume。
    """
    type: str
    params: Dict[str, Any] = Field(default_factory=dict)
    component: Optional[str] = None
    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_reference(self):
        if self.type == "price":
            source = self.params.get("source", "close")
            if source not in PRICE_SOURCES:
                raise ValueError(f"price source must be one of {PRICE_SOURCES}, got {source!r}")
            unknown = sorted(set(self.params) - {"source"})
            if unknown or self.component is not None:
                raise ValueError("price reference only accepts params.source")
            return self
        # 指标名、分量、参数在激活时校验，评估阶段不再出现未知指标
        check_factor(self.type, self.params, self.component)
        return self


class Condition(BaseModel):
    indicator: IndicatorRef
    operator: ConditionOperator
    value: Optional[float] = None
    value2: Optional[float] = None
    compare_indicator: Optional[IndicatorRef] = None
    order_type: Literal["buy", "sell"] = "buy"
    group_id: Optional[str] = None
    lookback_bars: int = Field(default=10, gt=0)
    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_operands(self):
        op = self.operator
        if op == "between":
            if self.value is None or self.value2 is None:
                raise ValueError("'between' requires value and value2")
            if self.value2 < self.value:
                raise ValueError("'between' requires value2 >= value")
        elif op == "indicator_comparison":
            if self.compare_indicator is None:
                raise ValueError("'indicator_comparison' requires compare_indicator")
        elif op in ("breakout_above", "breakout_below"):
            pass
        elif self.value is None and self.compare_indicator is None:
            raise ValueError(f"'{op}' requires value or compare_indicator")
        return self


class ConditionGroup(BaseModel):
    id: str
    group_operator: Literal["AND", "OR"] = "AND"
    model_config = ConfigDict(extra="forbid", frozen=True)


class ConditionTreeConfig(_StrategyBase):
    """通用条件树策略。"""
    kind: Literal["condition_tree"] = "condition_tree"
    conditions: List[Condition] = Field(default_factory=list)
    groups: List[ConditionGroup] = Field(default_factory=list)
    stop_loss_pct: Optional[float] = Field(default=None, gt=0)
    take_profit_pct: Optional[float] = Field(default=None, gt=0)
    trailing_stop_pct: Optional[float] = Field(default=None, gt=0)
    allow_short: bool = False
    min_candles: int = Field(default=30, gt=0)

    @model_validator(mode="after")
    def _check_tree(self):
        if not any(c.order_type == "buy" for c in self.conditions) and not (
            self.allow_short and any(c.order_type == "sell" for c in self.conditions)
        ):
            raise ValueError("condition_tree requires at least one entry condition")
        group_ids = [g.id for g in self.groups]
        if len(group_ids) != len(set(group_ids)):
            raise ValueError("condition group ids must be unique")
        unknown = {c.group_id for c in self.conditions if c.group_id is not None} - set(group_ids)
        if unknown:
            raise ValueError(f"conditions reference unknown groups: {sorted(unknown)}")
        return self


StrategyConfig = Annotated[
    Union[
        EmaCrossoverScalpingConfig,
        CompositeSentimentConfig,
        RangeReentryConfig,
        ConditionTreeConfig,
    ],
    Field(discriminator="kind"),
]

_STRATEGY_ADAPTER: TypeAdapter[Any] = TypeAdapter(StrategyConfig)


def parse_strategy_config(data: Any) -> Any:
    """策略激活入口：dict -> 具体策略配置；非法配置抛 ConfigurationError。"""
    if isinstance(data, _StrategyBase):
        return data
    try:
        return _STRATEGY_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid strategy config: {exc}") from exc


class SimParams(BaseModel):
    """回测参数。"""
    initial_balance: float = Field(default=10000.0, gt=0)
    leverage: float = Field(default=1.0, ge=1)
    maker_fee: float = Field(default=0.0002, ge=0)
    taker_fee: float = Field(default=0.0004, ge=0)
    fee_side: Literal["maker", "taker"] = "taker"
    slippage: float = Field(default=0.0005, ge=0, lt=1)
    execution_price: Literal["open", "close"] = "open"
    position_size_pct: float = Field(default=100.0, gt=0, le=100)
    trading_mode: Literal["spot", "futures"] = "spot"

    # 部分平仓：盈利百分比触发档位，以及每档平掉的初始仓位比例
    partial_close_levels: List[float] = Field(default_factory=list)
    partial_close_fraction: float = Field(default=0.25, gt=0, lt=1)

    trailing_stop: bool = False
    trailing_activation_ratio: float = Field(default=0.5, gt=0, le=1)
    intrabar_exits: bool = True

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_levels(self):
        levels = list(self.partial_close_levels)
        if any(lv <= 0 for lv in levels):
            raise ValueError("partial_close_levels must be positive")
        if levels != sorted(set(levels)):
            raise ValueError("partial_close_levels must be strictly increasing")
        if len(levels) * self.partial_close_fraction >= 1:
            raise ValueError("partial closes would close the whole position")
        return self

    @property
    def fee_rate(self) -> float:
        return self.taker_fee if self.fee_side == "taker" else self.maker_fee

    @property
    def effective_leverage(self) -> float:
        return 1.0 if self.trading_mode == "spot" else self.leverage


class TelegramConfig(BaseModel):
    bot_token: str
    chat_id: str
    timeout_secs: float = Field(default=10.0, gt=0)
    model_config = ConfigDict(extra="forbid")


class WebhookConfig(BaseModel):
    url: str
    timeout_secs: float = Field(default=10.0, gt=0)
    model_config = ConfigDict(extra="forbid")


class DeliveryConfig(BaseModel):
    """信号去重/投递配置。"""
    rate_limit_max: int = Field(default=10, gt=0)
    rate_limit_window_secs: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    base_delay_ms: float = Field(default=100.0, ge=0)
    telegram: Optional[TelegramConfig] = None
    webhook: Optional[WebhookConfig] = None
    model_config = ConfigDict(extra="forbid")


class LedgerConfig(BaseModel):
    """本地账本（SQLite）配置。"""
    enabled: bool = False
    path: str = "dataset/state/signals.sqlite3"
    model_config = ConfigDict(extra="forbid")


class AppConfig(BaseModel):
    """应用总配置。"""
    strategy_id: str = "default"
    user_id: str = "local"
    symbol: str = "BTCUSDT"
    timeframe: str = "1h"
    strategy: StrategyConfig
    backtest: SimParams = Field(default_factory=SimParams)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)

    model_config = ConfigDict(extra="forbid")
