"""预热期计算：从任意结构的策略配置里找出指标周期，取最大值 + 稳定缓冲。

配置被当作通用值树（mapping/sequence/标量）递归遍历，不依赖固定字段表；
新增指标只要遵循命名约定（如 `xxx_period`），不需要改动这里。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import Any, Iterator, Mapping, Sequence

from pydantic import BaseModel

from shared.utils.logging import setup_logger

_LOGGER = setup_logger("warmup")

STABILITY_BUFFER = 10

_FAMILY_TOKENS = ("rsi", "atr", "supertrend", "bb", "bollinger", "stoch", "williams", "cci", "adx", "sar", "ichimoku")


@dataclass(frozen=True)
class PeriodRule:
    """键名匹配规则：任一 family token 且任一 qualifier 出现在小写键名中。"""
    type: str
    family: tuple[str, ...]
    qualifiers: tuple[str, ...]

    def matches(self, key: str) -> bool:
        fam_ok = not self.family or any(tok in key for tok in self.family)
        return fam_ok and any(q in key for q in self.qualifiers)


# 顺序即优先级，首个命中的规则决定指标类型
PERIOD_RULES: tuple[PeriodRule, ...] = (
    PeriodRule("ema", ("ema",), ("period", "fast", "slow")),
    PeriodRule("macd", ("macd",), ("period", "fast", "slow", "signal")),
    PeriodRule("oscillator", _FAMILY_TOKENS, ("period",)),
    PeriodRule("generic", (), ("period", "lookback", "window", "length")),
)


@dataclass(frozen=True)
class DetectedIndicator:
    path: str
    name: str
    period: float
    type: str


def match_period_rule(key: str) -> PeriodRule | None:
    low = key.lower()
    for rule in PERIOD_RULES:
        if rule.matches(low):
            return rule
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _walk(node: Any, path: str) -> Iterator[DetectedIndicator]:
    if isinstance(node, BaseModel):
        node = node.model_dump()
    if isinstance(node, Mapping):
        for key, value in node.items():
            child = f"{path}.{key}" if path else str(key)
            if _is_number(value):
                rule = match_period_rule(str(key))
                if rule is not None and value > 0 and math.isfinite(float(value)):
                    yield DetectedIndicator(path=child, name=str(key), period=float(value), type=rule.type)
            else:
                yield from _walk(value, child)
    elif isinstance(node, Sequence) and not isinstance(node, (str, bytes)):
        for idx, item in enumerate(node):
            yield from _walk(item, f"{path}[{idx}]")


def detect_indicators(config: Any) -> list[DetectedIndicator]:
    return list(_walk(config, ""))


def warmup_period(config: Any, buffer: int = STABILITY_BUFFER) -> int:
    """预热 K 线数 = max(检测到的指标周期) + buffer；未检测到时返回 buffer。"""
    detected = detect_indicators(config)
    max_period = max((d.period for d in detected), default=0.0)
    result = int(math.ceil(max_period)) + buffer
    _LOGGER.debug(
        "warmup: periods=%s max=%s buffer=%s -> %s",
        [d.period for d in detected],
        max_period,
        buffer,
        result,
    )
    return result


def warmup_analysis(config: Any, buffer: int = STABILITY_BUFFER) -> dict[str, Any]:
    """预热期明细：检测到的指标与建议。"""
    detected = detect_indicators(config)
    max_period = max((d.period for d in detected), default=0.0)
    period = int(math.ceil(max_period)) + buffer

    recommendations: list[str] = []
    if period > 100:
        recommendations.append("Consider using shorter indicator periods to reduce warm-up time")
    if not detected:
        recommendations.append("No indicators detected - using default warm-up period")
    if max_period > 50:
        recommendations.append("Long indicator periods detected - ensure sufficient historical data")

    return {
        "warmup_period": period,
        "max_period": max_period,
        "buffer": buffer,
        "detected_indicators": [
            {"path": d.path, "name": d.name, "period": d.period, "type": d.type} for d in detected
        ],
        "recommendations": recommendations,
    }
