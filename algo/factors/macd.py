"""MACD 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from algo.factors.base import require_columns


@dataclass(frozen=True)
class MACDFactor:
    """MACD = EMA(fast) - EMA(slow)，signal = EMA(MACD, signal)，hist = MACD - signal。

    输出列：`{prefix}`、`{prefix}_signal`、`{prefix}_hist`。
    """

    fast: int = 12
    slow: int = 26
    signal: int = 9
    price_col: str = "close"
    out_col: str | None = None
    name: str = "macd"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if min(self.fast, self.slow, self.signal) <= 0:
            raise ValueError("MACD periods must be > 0")
        if self.fast >= self.slow:
            raise ValueError("MACD fast period must be < slow period")
        object.__setattr__(
            self,
            "params",
            {
                "fast": self.fast,
                "slow": self.slow,
                "signal": self.signal,
                "price_col": self.price_col,
                "out_col": self.out_col,
            },
        )

    def output_columns(self) -> list[str]:
        prefix = self.out_col or "macd"
        return [prefix, f"{prefix}_signal", f"{prefix}_hist"]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.price_col,), owner="MACDFactor")
        macd_col, signal_col, hist_col = self.output_columns()
        price = df[self.price_col].astype(float)
        ema_fast = price.ewm(span=self.fast, adjust=False, min_periods=self.fast).mean()
        ema_slow = price.ewm(span=self.slow, adjust=False, min_periods=self.slow).mean()
        macd = ema_fast - ema_slow
        signal = macd.ewm(span=self.signal, adjust=False, min_periods=self.signal).mean()
        df[macd_col] = macd
        df[signal_col] = signal
        df[hist_col] = macd - signal
        return df
