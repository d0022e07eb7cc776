"""EMA 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from algo.factors.base import require_columns


@dataclass(frozen=True)
class EMAFactor:
    """指数移动平均（EMA）。"""

    period: int = 14
    price_col: str = "close"
    out_col: str | None = None
    name: str = "ema"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("EMA period must be > 0")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "price_col": self.price_col,
                "out_col": self.out_col,
            },
        )

    def output_columns(self) -> list[str]:
        return [self.out_col or f"ema_{self.period}"]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.price_col,), owner="EMAFactor")
        out = self.output_columns()[0]
        df[out] = (
            df[self.price_col]
            .astype(float)
            .ewm(span=self.period, adjust=False, min_periods=self.period)
            .mean()
        )
        return df
