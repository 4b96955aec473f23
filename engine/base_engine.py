"""引擎统一出口。

回测引擎以 `run() -> EngineResult` 对外提供结果；CLI 只读取 `summary`，
产物路径（CSV/图表）放在 `artifacts`。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    summary: dict[str, Any]
    artifacts: dict[str, Any] = field(default_factory=dict)


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
