"""指标因子（Factors）抽象协议。"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

import pandas as pd


class Factor(Protocol):
    """因子协议：`compute(df) -> df`，只依赖当前及之前的行（因果）。"""

    name: str
    params: Mapping[str, Any]

    def output_columns(self) -> list[str]:
        """compute 写入的列名。"""
        ...

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        """对输入 df 添加/更新因子列并返回 df。"""
        ...


def true_range(df: pd.DataFrame, *, high_col: str = "high", low_col: str = "low", close_col: str = "close") -> pd.Series:
    """真实波幅：max(h-l, |h-prev_c|, |l-prev_c|)。"""
    high = df[high_col].astype(float)
    low = df[low_col].astype(float)
    prev_close = df[close_col].astype(float).shift(1)
    tr1 = high - low
    tr2 = (high - prev_close).abs()
    tr3 = (low - prev_close).abs()
    return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)


def require_columns(df: pd.DataFrame, cols: tuple[str, ...], *, owner: str) -> None:
    for col in cols:
        if col not in df.columns:
            raise ValueError(f"{owner} requires column: {col}")
