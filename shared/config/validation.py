"""配置键校验。

pydantic 的 `extra="forbid"` 能拒绝未知字段，但报错里没有拼写建议；
这里在进入 schema 之前对顶层与各配置块做一次“did you mean”检查。
"""

from __future__ import annotations

import difflib
from typing import Any, Iterable

from shared.config.schema import AppConfig, DeliveryConfig, LedgerConfig, SimParams
from shared.errors import ConfigurationError


def _suggest_key(key: str, allowed: Iterable[str]) -> str | None:
    matches = difflib.get_close_matches(key, list(allowed), n=1, cutoff=0.75)
    return matches[0] if matches else None


def _ensure_allowed_keys(block: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    unknown = [k for k in block.keys() if k not in allowed]
    if not unknown:
        return
    parts = []
    for k in sorted(unknown):
        suggestion = _suggest_key(k, allowed)
        if suggestion:
            parts.append(f"{k} (did you mean '{suggestion}'?)")
        else:
            parts.append(k)
    raise ConfigurationError(f"{ctx} contains unknown keys: {', '.join(parts)}")


def _expect_dict(val: Any, *, ctx: str) -> dict[str, Any]:
    if not isinstance(val, dict):
        raise ConfigurationError(f"{ctx} must be a dict")
    return val


def validate_raw_config(cfg: dict[str, Any]) -> None:
    """校验 raw config dict（来自 YAML + env 展开后）。"""
    if not isinstance(cfg, dict):
        raise ConfigurationError("Config root must be a dict")

    _ensure_allowed_keys(cfg, allowed=set(AppConfig.model_fields), ctx="config")
    if "strategy" not in cfg:
        raise ConfigurationError("Missing required config key: config.strategy")

    strategy = _expect_dict(cfg["strategy"], ctx="config.strategy")
    if "kind" not in strategy:
        raise ConfigurationError("Missing required config key: config.strategy.kind")

    blocks = {
        "backtest": set(SimParams.model_fields),
        "delivery": set(DeliveryConfig.model_fields),
        "ledger": set(LedgerConfig.model_fields),
    }
    for name, allowed in blocks.items():
        block = cfg.get(name)
        if block is None:
            continue
        block = _expect_dict(block, ctx=f"config.{name}")
        _ensure_allowed_keys(block, allowed=allowed, ctx=f"config.{name}")
