"""持久化写入重试（tenacity）。

- 首次失败后最多重试 max_retries 次，等待 base_delay_ms × 2^n（默认 100/200/400ms）；
- PersistenceConflict 不重试：记录已存在，按成功处理（幂等）；
- 只有 PersistenceTransientError 会重试，其余异常直接向上抛。
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import PersistenceConflict, PersistenceTransientError
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("delivery-retry")


def persist_with_retry(
    fn: Callable[[], object],
    *,
    max_retries: int = 3,
    base_delay_ms: float = 100.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """执行一次写入，暂时性失败按退避重试。

    Returns
    -------
    bool
        True 表示本次新写入；False 表示记录已存在（重复，视为成功）。

    Raises
    ------
    PersistenceTransientError
        重试耗尽。
    """
    retrying = Retrying(
        retry=retry_if_exception_type(PersistenceTransientError),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay_ms / 1000.0, exp_base=2),
        sleep=sleep,
        before_sleep=before_sleep_log(_LOGGER, logging.WARNING),
        reraise=True,
    )
    try:
        retrying(fn)
    except PersistenceConflict:
        return False
    except PersistenceTransientError as exc:
        _LOGGER.error("写入失败，重试 %d 次后放弃：%s", max_retries, exc)
        raise
    return True
