"""指标注册表：字符串 -> 因子实现。

注册表是显式对象：启动时构造（`IndicatorRegistry.with_defaults()`）并注入到引擎，
测试可以各自构造互不影响的注册表。
"""

from __future__ import annotations

import inspect
from typing import Any, Iterable, Mapping

import pandas as pd

from algo.factors.atr import ATRFactor
from algo.factors.base import Factor
from algo.factors.ema import EMAFactor
from algo.factors.macd import MACDFactor
from algo.factors.rsi import RSIFactor
from algo.factors.supertrend import SupertrendFactor


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免配置里多字段导致报错。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name != "self"}
    return {k: v for k, v in params.items() if k in allowed}


class IndicatorRegistry:
    """指标工厂注册表。"""

    def __init__(self, factories: Mapping[str, type] | None = None):
        self._factories: dict[str, type] = dict(factories or {})

    @classmethod
    def with_defaults(cls) -> "IndicatorRegistry":
        registry = cls()
        registry.register("ema", EMAFactor)
        registry.register("rsi", RSIFactor)
        registry.register("atr", ATRFactor)
        registry.register("macd", MACDFactor)
        registry.register("supertrend", SupertrendFactor)
        return registry

    def register(self, name: str, cls: type) -> None:
        self._factories[name.lower()] = cls

    def get(self, name: str) -> type:
        key = name.lower()
        if key not in self._factories:
            raise ValueError(f"Unknown indicator: {name}")
        return self._factories[key]

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._factories

    def build(self, specs: Iterable[Mapping[str, Any]]) -> list[Factor]:
        """从指标描述构建因子列表。

        支持形态：
        - {name: "ema", params: {...}}
        - {name: "ema", period: 9, out_col: "ema_fast"}  # params 直接平铺
        """
        factors: list[Factor] = []
        for item in specs:
            if not isinstance(item, Mapping):
                raise ValueError("indicator spec must be a mapping")
            name = str(item.get("name") or item.get("type") or "")
            if not name:
                raise ValueError("indicator spec missing name")
            reserved = {"name", "type", "params"}
            raw_params = item.get("params")
            if raw_params is None:
                params: dict[str, Any] = {k: v for k, v in item.items() if k not in reserved}
            else:
                if not isinstance(raw_params, Mapping):
                    raise ValueError("indicator params must be a mapping")
                params = dict(raw_params)
                for k, v in item.items():
                    if k in reserved or k in params:
                        continue
                    params[k] = v
            cls = self.get(name)
            kwargs = _filter_init_kwargs(cls, params)
            try:
                factors.append(cls(**kwargs))
            except TypeError as exc:
                raise ValueError(f"Invalid params for indicator '{name}': {params}") from exc
        return factors


def apply_factors(df: pd.DataFrame, factors: Iterable[Factor]) -> pd.DataFrame:
    for f in factors:
        df = f.compute(df)
    return df
