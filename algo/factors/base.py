"""指标因子协议。

因子在 K 线 DataFrame 上追加一列指标值；预热期与非有限值一律写 NaN，
由调用方（策略评估）按“未定义”处理。
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

import pandas as pd


class Factor(Protocol):
    name: str
    params: Mapping[str, Any]

    @property
    def output_column(self) -> str:
        """写入的列名，同名同参的因子列名一致（用于缓存）。"""
        ...

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        ...
