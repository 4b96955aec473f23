"""ATR 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from algo.factors.volatility import atr


@dataclass(frozen=True)
class ATRFactor:
    """平均真实波幅（ATR，True Range 的 EMA）。"""

    period: int = 14
    high_col: str = "high"
    low_col: str = "low"
    close_col: str = "close"
    out_col: str | None = None
    name: str = "atr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ATR period must be > 0")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "high_col": self.high_col,
                "low_col": self.low_col,
                "close_col": self.close_col,
                "out_col": self.out_col,
            },
        )

    @property
    def output_column(self) -> str:
        return self.out_col or f"atr_{self.period}"

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        for col in (self.high_col, self.low_col, self.close_col):
            if col not in df.columns:
                raise ValueError(f"ATRFactor requires column: {col}")
        df[self.output_column] = atr(
            df[self.high_col].to_numpy(dtype=float),
            df[self.low_col].to_numpy(dtype=float),
            df[self.close_col].to_numpy(dtype=float),
            self.period,
        )
        return df
