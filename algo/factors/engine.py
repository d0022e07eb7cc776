"""指标引擎：把策略需要的指标一次性挂到 K 线帧上，按下标给出当前/上一根的快照。

所有因子都是因果的（只看当前及之前的行），因此整段预计算与逐根增量更新结果一致。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

from algo.factors.registry import IndicatorRegistry, apply_factors
from shared.errors import InsufficientDataError
from shared.models.models import Candle

BASE_CANDLE_COLS = ("ts", "symbol", "open", "high", "low", "close", "volume")


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    rows = [
        {
            "ts": c.timestamp,
            "symbol": c.symbol,
            "open": c.open,
            "high": c.high,
            "low": c.low,
            "close": c.close,
            "volume": c.volume,
        }
        for c in candles
    ]
    return pd.DataFrame(rows, columns=list(BASE_CANDLE_COLS))


def _clean(value: Any) -> float | None:
    if value is None:
        return None
    try:
        val = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(val) or math.isinf(val):
        return None
    return val


@dataclass(frozen=True)
class IndicatorSnapshot:
    """当前与上一根 K 线的指标值；缺失/NaN 记为 None。"""
    current: dict[str, float | None] = field(default_factory=dict)
    previous: dict[str, float | None] = field(default_factory=dict)

    def get(self, name: str) -> float | None:
        return self.current.get(name)

    def prev(self, name: str) -> float | None:
        return self.previous.get(name)

    def require(self, *names: str, with_previous: bool = True) -> dict[str, float]:
        """取出必需指标的当前值；任一当前/上一值缺失则抛 InsufficientDataError。"""
        missing = [n for n in names if self.current.get(n) is None]
        if with_previous:
            missing += [f"{n}(prev)" for n in names if self.previous.get(n) is None]
        if missing:
            raise InsufficientDataError(f"indicator values not ready: {', '.join(missing)}")
        return {n: float(self.current[n]) for n in names}  # type: ignore[arg-type]


class IndicatorEngine:
    """按指标描述构建因子并在 K 线帧上计算。"""

    def __init__(self, registry: IndicatorRegistry, specs: Iterable[Mapping[str, Any]]):
        self._factors = registry.build(list(specs))
        self._columns: list[str] = []
        for f in self._factors:
            for col in f.output_columns():
                if col not in self._columns:
                    self._columns.append(col)
        self._frame: pd.DataFrame | None = None
        self._records: list[dict[str, float | None]] = []

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    @property
    def frame(self) -> pd.DataFrame:
        if self._frame is None:
            raise RuntimeError("IndicatorEngine.prime() has not been called")
        return self._frame

    def prime(self, candles: Sequence[Candle]) -> pd.DataFrame:
        df = candles_to_frame(candles)
        if not df.empty:
            df = apply_factors(df, self._factors)
        self._frame = df
        self._records = [
            {col: _clean(row.get(col)) for col in self._columns}
            for row in df.to_dict("records")
        ] if self._columns else [{} for _ in range(len(df))]
        return df

    def snapshot(self, index: int) -> IndicatorSnapshot:
        if index < 0 or index >= len(self._records):
            raise IndexError(f"snapshot index out of range: {index}")
        current = dict(self._records[index])
        previous = dict(self._records[index - 1]) if index > 0 else {col: None for col in self._columns}
        return IndicatorSnapshot(current=current, previous=previous)

    def value(self, index: int, name: str) -> float | None:
        """第 index 根 K 线上某列的值；越界或缺失返回 None。"""
        if index < 0 or index >= len(self._records):
            return None
        return self._records[index].get(name)
