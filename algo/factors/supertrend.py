"""Supertrend 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.factors.atr import wilder_or_sma
from algo.factors.base import require_columns, true_range


@dataclass(frozen=True)
class SupertrendFactor:
    """Supertrend(period, multiplier)，ATR 使用 Wilder 平滑。

    输出列：`{prefix}`（止损线价格）与 `{prefix}_dir`（+1 多头 / -1 空头）。
    """

    period: int = 10
    multiplier: float = 2.0
    out_col: str | None = None
    name: str = "supertrend"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("Supertrend period must be > 0")
        if self.multiplier <= 0:
            raise ValueError("Supertrend multiplier must be > 0")
        object.__setattr__(
            self,
            "params",
            {"period": self.period, "multiplier": self.multiplier, "out_col": self.out_col},
        )

    def output_columns(self) -> list[str]:
        prefix = self.out_col or "supertrend"
        return [prefix, f"{prefix}_dir"]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, ("high", "low", "close"), owner="SupertrendFactor")
        st_col, dir_col = self.output_columns()

        high = df["high"].astype(float).to_numpy()
        low = df["low"].astype(float).to_numpy()
        close = df["close"].astype(float).to_numpy()
        atr = wilder_or_sma(true_range(df), self.period, "wilder").to_numpy()

        n = len(df)
        hl2 = (high + low) / 2.0
        basic_upper = hl2 + self.multiplier * atr
        basic_lower = hl2 - self.multiplier * atr

        final_upper = np.full(n, np.nan)
        final_lower = np.full(n, np.nan)
        st = np.full(n, np.nan)
        direction = np.full(n, np.nan)

        for i in range(n):
            if np.isnan(atr[i]):
                continue
            prev = i - 1
            if prev < 0 or np.isnan(final_upper[prev]):
                final_upper[i] = basic_upper[i]
                final_lower[i] = basic_lower[i]
                direction[i] = 1.0 if close[i] >= hl2[i] else -1.0
            else:
                # 上轨只允许下移（除非前收盘已突破），下轨只允许上移
                if basic_upper[i] < final_upper[prev] or close[prev] > final_upper[prev]:
                    final_upper[i] = basic_upper[i]
                else:
                    final_upper[i] = final_upper[prev]
                if basic_lower[i] > final_lower[prev] or close[prev] < final_lower[prev]:
                    final_lower[i] = basic_lower[i]
                else:
                    final_lower[i] = final_lower[prev]

                if direction[prev] < 0:
                    direction[i] = 1.0 if close[i] > final_upper[i] else -1.0
                else:
                    direction[i] = -1.0 if close[i] < final_lower[i] else 1.0
            st[i] = final_lower[i] if direction[i] > 0 else final_upper[i]

        df[st_col] = st
        df[dir_col] = direction
        return df
