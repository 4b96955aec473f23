"""信号去重与投递。

record_signal 流程
------------------
1. hold 信号不投递（SKIPPED）；
2. hash = sha256(strategy_id-signal_type-candle_close_time)，已存在即 DUPLICATE（视为成功）；
3. 按 (user, strategy) 滑动窗口限流，超限 RATE_LIMITED，不落库；
4. 带退避重试写入存储；唯一键冲突短路为 DUPLICATE，重试耗尽为 FAILED；
5. 并发投递到所有通道，单通道失败只记录日志；
6. 所有通道都尝试过后标记 delivered（与单个通道结果无关）。
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Iterable, Sequence

from delivery.channels import Channel, SignalNotice, TelegramChannel, WebhookChannel
from delivery.rate_limiter import SlidingWindowRateLimiter
from delivery.retry import persist_with_retry
from delivery.store import SignalStore
from shared.config.schema import DeliveryConfig
from shared.errors import ChannelDeliveryError, PersistenceTransientError
from shared.models.models import DeliveryStatus, SignalRecord
from shared.utils.logging import setup_logger
from shared.utils.signal_hash import make_signal_hash

_LOGGER = setup_logger("delivery")


class SignalDispatcher:
    def __init__(
        self,
        store: SignalStore,
        channels: Sequence[Channel] = (),
        rate_limiter: SlidingWindowRateLimiter | None = None,
        *,
        max_retries: int = 3,
        base_delay_ms: float = 100.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ):
        self.store = store
        self.channels = list(channels)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep
        self.max_workers = max(1, int(max_workers))

    @classmethod
    def from_config(
        cls,
        cfg: DeliveryConfig,
        store: SignalStore,
        extra_channels: Iterable[Channel] = (),
    ) -> "SignalDispatcher":
        channels: list[Channel] = []
        if cfg.telegram is not None:
            channels.append(TelegramChannel(cfg.telegram))
        if cfg.webhook is not None:
            channels.append(WebhookChannel(cfg.webhook))
        channels.extend(extra_channels)
        return cls(
            store,
            channels,
            SlidingWindowRateLimiter(cfg.rate_limit_max, cfg.rate_limit_window_secs),
            max_retries=cfg.max_retries,
            base_delay_ms=cfg.base_delay_ms,
        )

    def record_signal(self, notice: SignalNotice) -> DeliveryStatus:
        signal = notice.signal
        if signal.is_hold:
            return DeliveryStatus.SKIPPED

        signal_hash = notice.signal_hash or make_signal_hash(
            strategy_id=notice.strategy_id,
            signal_type=signal.type,
            candle_close_time=notice.candle_close_time,
        )
        if self._exists(signal_hash):
            _LOGGER.info("重复信号，忽略：%s %s %s", notice.strategy_id, signal.type.value, signal_hash[:12])
            return DeliveryStatus.DUPLICATE

        if not self.rate_limiter.try_acquire(notice.user_id, notice.strategy_id):
            _LOGGER.warning("信号被限流：user=%s strategy=%s", notice.user_id, notice.strategy_id)
            return DeliveryStatus.RATE_LIMITED

        record = SignalRecord(
            hash=signal_hash,
            strategy_id=notice.strategy_id,
            user_id=notice.user_id,
            signal_type=signal.type,
            candle_close_time=notice.candle_close_time,
            reason=signal.reason,
            confidence=signal.confidence,
        )
        try:
            inserted = persist_with_retry(
                lambda: self.store.insert_signal(record),
                max_retries=self.max_retries,
                base_delay_ms=self.base_delay_ms,
                sleep=self._sleep,
            )
        except PersistenceTransientError as exc:
            _LOGGER.error("信号写入失败：%s（%s）", signal_hash[:12], exc)
            return DeliveryStatus.FAILED
        if not inserted:
            return DeliveryStatus.DUPLICATE

        self._fan_out(replace(notice, signal_hash=signal_hash))
        self.store.mark_delivered(signal_hash)
        _LOGGER.info(
            "信号已投递：%s %s @ %.4f（%d 个通道）",
            notice.strategy_id,
            signal.type.value,
            notice.price,
            len(self.channels),
        )
        return DeliveryStatus.DELIVERED

    def _exists(self, signal_hash: str) -> bool:
        try:
            return self.store.get_signal(signal_hash) is not None
        except PersistenceTransientError as exc:
            # 查询失败时交给带重试的写入来判断是否重复
            _LOGGER.warning("查询信号失败：%s", exc)
            return False

    def _fan_out(self, notice: SignalNotice) -> list[str]:
        """并发投递，返回失败的通道名。"""
        if not self.channels:
            return []
        failed: list[str] = []
        workers = min(self.max_workers, len(self.channels))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(ch, pool.submit(ch.send, notice)) for ch in self.channels]
            for ch, fut in futures:
                try:
                    fut.result()
                except ChannelDeliveryError as exc:
                    _LOGGER.warning("通道投递失败：%s", exc)
                    failed.append(ch.name)
                except Exception:
                    _LOGGER.exception("通道 %s 异常", ch.name)
                    failed.append(ch.name)
        return failed

