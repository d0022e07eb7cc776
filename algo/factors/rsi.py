"""RSI 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.factors.base import require_columns


@dataclass(frozen=True)
class RSIFactor:
    """相对强弱指数（RSI，SMA 版本）。"""

    period: int = 14
    price_col: str = "close"
    out_col: str | None = None
    name: str = "rsi"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("RSI period must be > 0")
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
        return [self.out_col or f"rsi_{self.period}"]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.price_col,), owner="RSIFactor")
        out = self.output_columns()[0]

        delta = df[self.price_col].astype(float).diff()
        gain = delta.clip(lower=0.0)
        loss = (-delta).clip(lower=0.0)

        avg_gain = gain.rolling(self.period, min_periods=self.period).mean()
        avg_loss = loss.rolling(self.period, min_periods=self.period).mean()

        rs = avg_gain / avg_loss.replace(0.0, np.nan)
        rsi = 100.0 - (100.0 / (1.0 + rs))
        # 窗口内无下跌：纯上涨记 100，完全走平记 50
        no_loss = avg_loss.notna() & (avg_loss == 0.0)
        rsi = rsi.mask(no_loss & (avg_gain > 0.0), 100.0)
        rsi = rsi.mask(no_loss & (avg_gain == 0.0), 50.0)
        df[out] = rsi
        return df
