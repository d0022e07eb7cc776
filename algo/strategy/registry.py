"""策略注册表：字符串 -> StrategyEvaluator 实现。"""

from __future__ import annotations

from algo.strategy.advanced_atr import AdvancedAtrStrategy
from algo.strategy.base import StrategyEvaluator
from algo.strategy.ema_gap_atr import EmaGapAtrStrategy
from algo.strategy.price_action import PriceActionStrategy

_REGISTRY: dict[str, type] = {}


def _normalize(name: str) -> str:
    return str(name).strip().lower().replace("-", "_")


def register_strategy(name: str, cls: type) -> None:
    _REGISTRY[_normalize(name)] = cls


def get_strategy_cls(name: str) -> type:
    key = _normalize(name)
    if key not in _REGISTRY:
        raise ValueError(f"Unknown strategy: {name}")
    return _REGISTRY[key]


def available_strategies() -> list[str]:
    return sorted(_REGISTRY)


def build_evaluator(name: str) -> StrategyEvaluator:
    """按名称构建新的策略实例（每次回测一个，状态不共享）。"""
    return get_strategy_cls(name)()


# 默认注册
register_strategy("ema_gap_atr", EmaGapAtrStrategy)
register_strategy("advanced_atr", AdvancedAtrStrategy)
register_strategy("price_action", PriceActionStrategy)
