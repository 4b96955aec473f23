"""按 (user, strategy) 的滑动窗口限流。

窗口内（默认 60s）最多放行 max_events 次（默认 10），与信号去重哈希无关。
实例由调用方创建并注入，生命周期跟随进程；clock 可注入，便于测试。
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class SlidingWindowRateLimiter:
    def __init__(
        self,
        max_events: int = 10,
        window_secs: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_events <= 0:
            raise ValueError("max_events must be > 0")
        if window_secs <= 0:
            raise ValueError("window_secs must be > 0")
        self.max_events = int(max_events)
        self.window_secs = float(window_secs)
        self._clock = clock
        self._events: dict[tuple[str, str], deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def try_acquire(self, user_id: str, strategy_id: str) -> bool:
        """放行则记录一次并返回 True；窗口已满返回 False（不记录）。"""
        key = (user_id, strategy_id)
        with self._lock:
            now = self._clock()
            events = self._events.setdefault(key, deque())
            cutoff = now - self.window_secs
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= self.max_events:
                return False
            events.append(now)
            if now - self._last_sweep >= self.window_secs:
                self._sweep(cutoff)
                self._last_sweep = now
            return True

    def _sweep(self, cutoff: float) -> None:
        """丢弃窗口内已无记录的 (user, strategy)，避免键无限增长。"""
        for key in [k for k, ev in self._events.items() if not ev or ev[-1] <= cutoff]:
            del self._events[key]

