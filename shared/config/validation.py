"""策略配置校验（Schema Enforcement + 取值范围）。

目标：
- 在启动阶段尽早失败：未知字段（带拼写建议）、类型错误、fast >= slow 等结构问题直接拒绝；
- 取值范围问题以结构化报告返回（带严重级别），由调用方决定是否继续。
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from shared.config.schema import SUPPORTED_TIMEFRAMES, StrategyConfig, TrailingStopConfig
from shared.errors import ConfigValidationError


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: Severity


@dataclass
class ValidationReport:
    """校验报告；CRITICAL 视为结构错误。"""
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity is Severity.CRITICAL]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity is not Severity.CRITICAL]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, field_name: str, message: str, severity: Severity = Severity.CRITICAL) -> None:
        self.issues.append(ValidationIssue(field=field_name, message=message, severity=severity))

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [f"{i.field}: {i.message}" for i in self.errors],
            "warnings": [f"{i.field}: {i.message}" for i in self.warnings],
        }


def _suggest_key(key: str, allowed: Iterable[str]) -> str | None:
    matches = difflib.get_close_matches(key, list(allowed), n=1, cutoff=0.75)
    return matches[0] if matches else None


def _check_unknown_keys(raw: Mapping[str, Any], *, allowed: set[str], ctx: str, report: ValidationReport) -> None:
    for k in sorted(k for k in raw.keys() if k not in allowed):
        suggestion = _suggest_key(str(k), allowed)
        hint = f" (did you mean '{suggestion}'?)" if suggestion else ""
        report.add(f"{ctx}{k}", f"unknown key{hint}")


def _in_range(report: ValidationReport, raw: Mapping[str, Any], key: str, lo: float, hi: float) -> None:
    val = raw.get(key)
    if val is None or isinstance(val, bool) or not isinstance(val, (int, float)):
        return
    if val < lo or val > hi:
        report.add(key, f"must be between {lo:g} and {hi:g}, got {val}")


def _value(raw: Mapping[str, Any], key: str) -> Any:
    if key in raw:
        return raw[key]
    return StrategyConfig.model_fields[key].default


def _collect_range_issues(raw: Mapping[str, Any], report: ValidationReport) -> None:
    tf = raw.get("timeframe")
    if tf is not None and tf not in SUPPORTED_TIMEFRAMES:
        report.add("timeframe", f"must be one of {', '.join(SUPPORTED_TIMEFRAMES)}, got {tf!r}")

    for key in ("ema_fast_period", "ema_slow_period"):
        _in_range(report, raw, key, 1, 200)
    for key in ("atr_period", "rsi_period"):
        _in_range(report, raw, key, 1, 100)
    for key in ("rsi_entry_long", "rsi_entry_short", "rsi_exit_long", "rsi_exit_short"):
        _in_range(report, raw, key, 0, 100)
    _in_range(report, raw, "max_lots", 1, 20)

    fast, slow = _value(raw, "ema_fast_period"), _value(raw, "ema_slow_period")
    if isinstance(fast, (int, float)) and isinstance(slow, (int, float)) and fast >= slow:
        report.add("ema_fast_period", f"must be less than ema_slow_period ({fast} >= {slow})")

    macd_fast, macd_slow = _value(raw, "macd_fast"), _value(raw, "macd_slow")
    if isinstance(macd_fast, (int, float)) and isinstance(macd_slow, (int, float)) and macd_fast >= macd_slow:
        report.add("macd_fast", f"must be less than macd_slow ({macd_fast} >= {macd_slow})")

    trailing = raw.get("trailing_stop")
    if isinstance(trailing, Mapping):
        _in_range(report, trailing, "atr_multiplier", 0, 10)

    max_lots = raw.get("max_lots")
    if isinstance(max_lots, int) and not isinstance(max_lots, bool) and 10 < max_lots <= 20:
        report.add("max_lots", "high max_lots may lead to excessive risk", Severity.MEDIUM)
    if raw.get("gap_up_down_threshold") == 0:
        report.add("gap_up_down_threshold", "no gap filtering may lead to more false signals", Severity.MEDIUM)


def _collect_pydantic_issues(exc: ValidationError, report: ValidationReport) -> None:
    reported = {i.field for i in report.issues}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        if err.get("type") == "extra_forbidden" or loc in reported:
            # 未知字段已带拼写建议报告过；同一字段不重复报告
            continue
        report.add(loc, str(err.get("msg", "invalid value")))


def validate_strategy_config(raw: Mapping[str, Any] | StrategyConfig) -> ValidationReport:
    """校验策略配置，永远返回报告而不是抛异常。"""
    report = ValidationReport()
    if isinstance(raw, StrategyConfig):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        report.add("<root>", "strategy config must be a mapping")
        return report

    _check_unknown_keys(raw, allowed=set(StrategyConfig.model_fields), ctx="", report=report)
    trailing = raw.get("trailing_stop")
    if isinstance(trailing, Mapping):
        _check_unknown_keys(
            trailing,
            allowed=set(TrailingStopConfig.model_fields),
            ctx="trailing_stop.",
            report=report,
        )
    _collect_range_issues(raw, report)

    try:
        StrategyConfig.model_validate(dict(raw))
    except ValidationError as exc:
        _collect_pydantic_issues(exc, report)
    return report


def parse_strategy_config(raw: Mapping[str, Any] | StrategyConfig) -> StrategyConfig:
    """解析并校验策略配置。

    Raises
    ------
    ConfigValidationError
        存在 CRITICAL 问题（未知字段、类型错误、越界、fast >= slow）。
    """
    report = validate_strategy_config(raw)
    if not report.is_valid:
        first = report.errors[0]
        raise ConfigValidationError(
            f"Invalid strategy config: {first.field}: {first.message}"
            + (f" (+{len(report.errors) - 1} more)" if len(report.errors) > 1 else ""),
            report=report,
        )
    if isinstance(raw, StrategyConfig):
        return raw
    return StrategyConfig.model_validate(dict(raw))
