"""策略评估协议。

每个策略变体实现同一个能力：
- `indicator_specs(config)`：声明需要的指标列（交给 IndicatorEngine 计算）；
- `evaluate(config, window, context)`：基于当前 K 线窗口与持仓上下文产出信号。

策略实例在一次回测内复用（可以持有跟踪状态，如参考 ATR），不跨 symbol 共享。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from algo.factors.engine import IndicatorSnapshot
from shared.config.schema import StrategyConfig
from shared.models.models import Candle, Direction, Lot, Signal


@dataclass(frozen=True)
class StrategyWindow:
    """当前评估窗口。

    `lookup(offset, name)` 返回 offset 根之前的指标值（0 为当前）；没有历史时为 None。
    """
    candle: Candle
    snapshot: IndicatorSnapshot
    index: int = 0
    prev_candle: Candle | None = None
    lookup: Callable[[int, str], float | None] | None = None

    def value_back(self, name: str, offset: int) -> float | None:
        if offset == 0:
            return self.snapshot.get(name)
        if offset == 1:
            return self.snapshot.prev(name)
        if self.lookup is None:
            return None
        return self.lookup(offset, name)


@dataclass(frozen=True)
class PositionContext:
    """策略可见的持仓视图（只读）。"""
    lots: tuple[Lot, ...] = ()
    max_lots: int = 1
    pyramiding_enabled: bool = False

    @property
    def direction(self) -> Direction | None:
        return self.lots[0].direction if self.lots else None

    @property
    def is_open(self) -> bool:
        return bool(self.lots)

    @property
    def can_pyramid(self) -> bool:
        return self.is_open and self.pyramiding_enabled and len(self.lots) < self.max_lots

    @classmethod
    def from_lots(cls, lots: Sequence[Lot], config: StrategyConfig) -> "PositionContext":
        return cls(lots=tuple(lots), max_lots=config.max_lots, pyramiding_enabled=config.pyramiding_enabled)


@dataclass
class Evaluation:
    """一次评估的输出：信号 + 诊断信息（EMA、交叉标记、ATR 度量、原因代码）。"""
    signals: list[Signal] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)


class StrategyEvaluator(Protocol):
    name: str

    def indicator_specs(self, config: StrategyConfig) -> list[dict[str, Any]]:
        ...

    def evaluate(self, config: StrategyConfig, window: StrategyWindow, context: PositionContext) -> Evaluation:
        ...
