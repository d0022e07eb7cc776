"""回测安全检查：在运行前识别危险或可疑的配置组合。

每项检查给出 {name, passed, message, severity}；CRITICAL 未通过则拒绝运行，
严格模式下 HIGH 未通过同样拒绝。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import pandas as pd

from shared.config.schema import StrategyConfig
from shared.config.validation import Severity
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("safety")

MIN_CAPITAL = 10_000
MAX_CAPITAL = 100_000_000


@dataclass(frozen=True)
class SafetyCheck:
    name: str
    passed: bool
    message: str
    severity: Severity

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message, "severity": self.severity.value}


@dataclass
class SafetyReport:
    """安全检查报告。"""
    checks: list[SafetyCheck] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def failed(self) -> list[SafetyCheck]:
        return [c for c in self.checks if not c.passed]

    def failed_with(self, severity: Severity) -> list[SafetyCheck]:
        return [c for c in self.failed if c.severity is severity]

    @property
    def overall_safe(self) -> bool:
        return not self.failed_with(Severity.CRITICAL) and not self.failed_with(Severity.HIGH)

    def can_proceed(self, strict: bool = False) -> bool:
        if self.failed_with(Severity.CRITICAL):
            return False
        if strict and self.failed_with(Severity.HIGH):
            return False
        return True

    def summary(self) -> dict[str, Any]:
        counts = {s.value: len(self.failed_with(s)) for s in Severity}
        return {
            "overall_safe": self.overall_safe,
            "total_checks": len(self.checks),
            "failed_checks": len(self.failed),
            "failed_by_severity": counts,
            "recommendations": list(self.recommendations),
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.summary(), "checks": [c.to_dict() for c in self.checks]}


def _to_timestamp(value: str | date | datetime | None) -> pd.Timestamp | None:
    if value is None or value == "":
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


class SafetyChecker:
    """配置安全检查器。

    Parameters
    ----------
    price_hint:
        参考价格；给出时检查 `position_size * max_lots * price_hint <= capital * max_loss_pct`。
    """

    def __init__(self, price_hint: float | None = None):
        self.price_hint = price_hint

    def check(
        self,
        config: StrategyConfig,
        start: str | date | datetime | None = None,
        end: str | date | datetime | None = None,
    ) -> SafetyReport:
        checks: list[SafetyCheck] = []
        checks.extend(self._parameter_checks(config))
        checks.extend(self._risk_checks(config))
        checks.extend(self._date_checks(config, start, end))
        report = SafetyReport(checks=checks, recommendations=self._recommendations(checks))
        for c in report.failed:
            level = "warning" if c.severity in (Severity.HIGH, Severity.CRITICAL) else "info"
            getattr(_LOGGER, level)("safety check failed: [%s] %s - %s", c.severity.value, c.name, c.message)
        return report

    def _parameter_checks(self, cfg: StrategyConfig) -> list[SafetyCheck]:
        checks = [
            SafetyCheck(
                "EMA Fast Period Too Low",
                cfg.ema_fast_period >= 2,
                "EMA fast period is too low, may cause excessive noise",
                Severity.HIGH,
            ),
            SafetyCheck(
                "EMA Slow Period Too High",
                cfg.ema_slow_period <= 100,
                "EMA slow period is too high, may cause delayed signals",
                Severity.MEDIUM,
            ),
            SafetyCheck(
                "No Entry Filtering",
                not (cfg.atr_multiplier_entry == 0 and cfg.strong_candle_threshold == 0),
                "No entry filtering enabled - may generate excessive signals",
                Severity.HIGH,
            ),
        ]
        rsi_extreme = any(v < 20 or v > 80 for v in (cfg.rsi_entry_long, cfg.rsi_entry_short))
        checks.append(
            SafetyCheck(
                "Extreme RSI Thresholds",
                not rsi_extreme,
                "RSI entry thresholds are extreme, may miss valid signals",
                Severity.MEDIUM,
            )
        )
        checks.append(
            SafetyCheck(
                "Excessive Pyramiding",
                cfg.max_lots <= 15,
                "Max lots is very high, may lead to significant losses",
                Severity.CRITICAL,
            )
        )
        checks.append(
            SafetyCheck(
                "Trailing Stop Disabled",
                cfg.trailing_stop.enabled,
                "Trailing stop is disabled - open profits are not protected",
                Severity.LOW,
            )
        )
        return checks

    def _risk_checks(self, cfg: StrategyConfig) -> list[SafetyCheck]:
        checks = [
            SafetyCheck(
                "No Risk Limits",
                bool(cfg.max_loss_pct),
                "No maximum loss percentage set - unlimited risk",
                Severity.CRITICAL,
            ),
            SafetyCheck(
                "Low Initial Balance",
                cfg.capital >= MIN_CAPITAL,
                "Initial balance is too low for meaningful backtesting",
                Severity.MEDIUM,
            ),
            SafetyCheck(
                "Excessive Initial Balance",
                cfg.capital <= MAX_CAPITAL,
                "Initial balance is extremely high - verify this is correct",
                Severity.HIGH,
            ),
        ]
        if self.price_hint is not None and cfg.max_loss_pct:
            exposure = cfg.position_size * cfg.max_lots * self.price_hint
            limit = cfg.capital * cfg.max_loss_pct
            checks.append(
                SafetyCheck(
                    "Excessive Exposure",
                    exposure <= limit,
                    f"Max exposure {exposure:.2f} exceeds loss budget {limit:.2f}",
                    Severity.HIGH,
                )
            )
        return checks

    def _date_checks(self, cfg: StrategyConfig, start, end) -> list[SafetyCheck]:
        start_ts, end_ts = _to_timestamp(start), _to_timestamp(end)
        if start_ts is None or end_ts is None:
            return []
        if end_ts <= start_ts:
            return [SafetyCheck("Invalid Date Range", False, "End date must be after start date", Severity.CRITICAL)]
        days = (end_ts - start_ts).total_seconds() / 86400
        checks = [
            SafetyCheck(
                "Long Date Range",
                days <= 365 * 10,
                "Date range exceeds 10 years - may take excessive time to process",
                Severity.MEDIUM,
            ),
            SafetyCheck(
                "Short Date Range",
                days >= 30,
                "Date range is less than 30 days - results may not be reliable",
                Severity.LOW,
            ),
        ]
        if cfg.timeframe == "1m":
            checks.append(
                SafetyCheck(
                    "High Frequency Long Range",
                    days <= 30,
                    "1-minute data over long period may be computationally expensive",
                    Severity.MEDIUM,
                )
            )
        return checks

    @staticmethod
    def _recommendations(checks: list[SafetyCheck]) -> list[str]:
        failed = [c for c in checks if not c.passed]
        recs: list[str] = []
        if any(c.severity is Severity.CRITICAL for c in failed):
            recs.append("CRITICAL: fix all critical issues before running the backtest")
        if any(c.severity is Severity.HIGH for c in failed):
            recs.append("HIGH: review high-risk settings before proceeding")
        names = {c.name for c in failed}
        if "Excessive Pyramiding" in names:
            recs.append("Reduce max_lots to 15 or fewer")
        if "No Risk Limits" in names:
            recs.append("Set max_loss_pct to cap the loss per position")
        if "No Entry Filtering" in names:
            recs.append("Enable atr_multiplier_entry or strong_candle_threshold to filter entries")
        if "Trailing Stop Disabled" in names:
            recs.append("Consider enabling a trailing stop to protect open profits")
        if "Short Date Range" in names:
            recs.append("Use at least 30 days of data for reliable results")
        return recs
