"""ATR 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import pandas as pd

from algo.factors.base import require_columns, true_range


@dataclass(frozen=True)
class ATRFactor:
    """平均真实波幅（ATR）。

    smoothing="sma" 为简单均值；"wilder" 为 Wilder 平滑（alpha=1/period）。
    """

    period: int = 14
    high_col: str = "high"
    low_col: str = "low"
    close_col: str = "close"
    smoothing: Literal["sma", "wilder"] = "sma"
    out_col: str | None = None
    name: str = "atr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ATR period must be > 0")
        if self.smoothing not in ("sma", "wilder"):
            raise ValueError(f"Unknown ATR smoothing: {self.smoothing}")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "high_col": self.high_col,
                "low_col": self.low_col,
                "close_col": self.close_col,
                "smoothing": self.smoothing,
                "out_col": self.out_col,
            },
        )

    def output_columns(self) -> list[str]:
        return [self.out_col or f"atr_{self.period}"]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.high_col, self.low_col, self.close_col), owner="ATRFactor")
        out = self.output_columns()[0]
        tr = true_range(df, high_col=self.high_col, low_col=self.low_col, close_col=self.close_col)
        df[out] = wilder_or_sma(tr, self.period, self.smoothing)
        return df


def wilder_or_sma(tr: pd.Series, period: int, smoothing: str) -> pd.Series:
    if smoothing == "wilder":
        return tr.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    return tr.rolling(period, min_periods=period).mean()
