"""时段区间重入策略（4h re-entry）。

- 每个交易日（默认纽约时间，自动处理夏令时）在 session_start-session_end 内记录区间高低点；
- 时段内区间仍在形成，不交易；
- 做多：前收盘 < 区间低点 且 当前收盘 >= 区间低点（跌破后收回）；
  或当前 K 线低点在容差带内回踩区间低点并收在其上；
- 做空：前收盘 > 区间高点 且 当前收盘 <= 区间高点；
- 止损/止盈按区间高度与风险回报比计算，而不是 ATR；
- 过滤器：ADX、RSI 区间、成交量（filter_mode 默认 block）。
"""

from __future__ import annotations

from datetime import date
from zoneinfo import ZoneInfo

from algo.position.lifecycle import ExitReason, position_age_seconds
from algo.strategy.base import CandleSeries, require_candles, value_at
from algo.strategy.filters import FilterCheck, adx_check, resolve_filters, rsi_band_check, volume_check
from shared.config.schema import RangeReentryConfig
from shared.models.models import PositionState, Side, Signal
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("strategy-range-reentry")

ENTRY_EXPIRE_MINUTES = 240


def required_candles(cfg: RangeReentryConfig) -> int:
    periods = [2]
    if cfg.use_adx_filter:
        periods.append(cfg.adx_period * 2)
    if cfg.use_rsi_filter:
        periods.append(cfg.rsi_period + 1)
    if cfg.use_volume_filter:
        periods.append(cfg.volume_lookback + 1)
    return max(periods) + cfg.safety_margin


def _in_session(cfg: RangeReentryConfig, local_time) -> bool:
    return cfg.session_start <= local_time <= cfg.session_end


def session_range(series: CandleSeries, index: int, cfg: RangeReentryConfig) -> tuple[float, float] | None:
    """当日已完成的时段区间 (high, low)。

    当前 K 线仍在时段内或当日时段尚无 K 线时返回 None。
    区间只由当日（本地时区）的 K 线重建，新的一天自动重置。
    """
    tz = ZoneInfo(cfg.session_timezone)
    current_local = series.candles[index].open_time.astimezone(tz)
    if _in_session(cfg, current_local.time()):
        return None
    day: date = current_local.date()

    high = low = None
    j = index
    while j >= 0:
        local = series.candles[j].open_time.astimezone(tz)
        if local.date() != day:
            break
        if _in_session(cfg, local.time()):
            h = value_at(series.high, j, "session_high")
            lo = value_at(series.low, j, "session_low")
            high = h if high is None else max(high, h)
            low = lo if low is None else min(low, lo)
        j -= 1
    if high is None or low is None:
        return None
    return high, low


def evaluate_range_reentry(
    series: CandleSeries,
    index: int,
    cfg: RangeReentryConfig,
    position: PositionState,
) -> Signal:
    require_candles(index, required_candles(cfg))
    price = value_at(series.close, index, "close")
    prev_close = value_at(series.close, index - 1, "close")

    if position.is_open:
        return _check_exit(series, index, cfg, position, price, prev_close)

    rng = session_range(series, index, cfg)
    if rng is None:
        return Signal.hold("session range not established")
    range_high, range_low = rng
    range_size = range_high - range_low
    if range_size <= 0:
        return Signal.hold("session range has zero height")

    low_now = value_at(series.low, index, "low")
    tolerance = range_low * cfg.retest_tolerance_pct / 100.0

    side: Side | None = None
    trigger = ""
    if prev_close < range_low <= price:
        side, trigger = Side.LONG, f"re-entry above range low {range_low:.4f}"
    elif (
        cfg.enable_retest_entry
        and prev_close >= range_low
        and abs(low_now - range_low) <= tolerance
        and price > range_low
    ):
        side, trigger = Side.LONG, f"retest of range low {range_low:.4f} (±{cfg.retest_tolerance_pct:g}%)"
    elif cfg.allow_short and prev_close > range_high >= price:
        side, trigger = Side.SHORT, f"re-entry below range high {range_high:.4f}"

    if side is None:
        return Signal.hold(
            f"no re-entry: price {price:.4f} vs range [{range_low:.4f}, {range_high:.4f}]",
            range_high=range_high,
            range_low=range_low,
        )

    checks: list[FilterCheck] = []
    if cfg.use_adx_filter:
        checks.append(adx_check(value_at(series.adx(cfg.adx_period), index, f"adx_{cfg.adx_period}"), cfg.adx_threshold))
    if cfg.use_rsi_filter:
        rsi_now = value_at(series.rsi(cfg.rsi_period), index, f"rsi_{cfg.rsi_period}")
        checks.append(rsi_band_check(rsi_now, cfg.rsi_lower, cfg.rsi_upper))
    if cfg.use_volume_filter:
        volume = value_at(series.volume, index, "volume")
        avg_volume = value_at(series.average_volume(cfg.volume_lookback), index - 1, "average_volume")
        checks.append(volume_check(volume, avg_volume, cfg.volume_multiplier))

    decision = resolve_filters(
        checks,
        mode=cfg.filter_mode,
        base_confidence=cfg.base_confidence,
        min_confidence=cfg.min_confidence,
    )
    if not decision.allowed:
        _LOGGER.info("区间重入 %s 被过滤：%s", side.value, decision.reason)
        return Signal.hold(f"{side.value} {trigger} filtered: {decision.reason}", filtered=list(decision.failed))

    stop_distance = range_size * cfg.stop_range_fraction
    if side is Side.LONG:
        stop_loss = price - stop_distance
        take_profit = price + stop_distance * cfg.risk_reward
    else:
        stop_loss = price + stop_distance
        take_profit = price - stop_distance * cfg.risk_reward

    return Signal(
        side.entry_signal,
        f"{trigger}, {decision.reason}",
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=decision.confidence,
        time_to_expire=ENTRY_EXPIRE_MINUTES,
        metadata={"side": side.value, "range_high": range_high, "range_low": range_low},
    )


def _check_exit(
    series: CandleSeries,
    index: int,
    cfg: RangeReentryConfig,
    position: PositionState,
    price: float,
    prev_close: float,
) -> Signal:
    side = position.side
    if side is None:
        raise ValueError("exit check requires an open position")
    exit_type = side.exit_signal
    now = series.candles[index].close_time

    age = position_age_seconds(position, now)
    if cfg.max_position_time is not None and age >= cfg.max_position_time:
        return Signal(
            exit_type,
            f"time exit: held {age:.0f}s",
            confidence=70.0,
            metadata={"exit_reason": ExitReason.TIME_EXIT.value},
        )

    sl, tp = position.stop_loss, position.take_profit
    if side is Side.LONG:
        hit_sl = sl is not None and price <= sl
        hit_tp = tp is not None and price >= tp
    else:
        hit_sl = sl is not None and price >= sl
        hit_tp = tp is not None and price <= tp
    if hit_sl:
        return Signal(exit_type, f"stop loss at {price:.4f}", confidence=90.0,
                      metadata={"exit_reason": ExitReason.STOP_LOSS.value})
    if hit_tp:
        return Signal(exit_type, f"take profit at {price:.4f}", confidence=95.0,
                      metadata={"exit_reason": ExitReason.TAKE_PROFIT.value})

    # 反向重入：持多时价格从区间上方收回区间高点之下，持空时反之
    if position.range_high is not None and position.range_low is not None:
        if side is Side.LONG and prev_close > position.range_high >= price:
            return Signal(exit_type, "reversal: re-entry below range high", confidence=85.0,
                          metadata={"exit_reason": ExitReason.REVERSAL.value})
        if side is Side.SHORT and prev_close < position.range_low <= price:
            return Signal(exit_type, "reversal: re-entry above range low", confidence=85.0,
                          metadata={"exit_reason": ExitReason.REVERSAL.value})
    return Signal.hold(f"holding {side.value}")
