"""配置架构定义（Pydantic Schema）。

目标：
- 让策略配置成为“强类型 + 不可变”的值对象，校验后不再修改；
- 启动阶段尽早失败，避免 typo/类型错误在长回测中“隐蔽爆炸”；
- 风险类判断（max_lots 过大、未设置止损比例等）不在这里拦截，交给 SafetyChecker 出报告。
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

SUPPORTED_TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d")


def _check_hhmm(value: Optional[str], *, ctx: str) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if not _HHMM.match(value):
        raise ValueError(f"{ctx} must be HH:MM, got {value!r}")
    return value


class TrailingStopConfig(BaseModel):
    """移动止损配置。"""
    enabled: bool = False
    type: Literal["ATR", "PERCENTAGE"] = "ATR"
    atr_multiplier: float = Field(default=2.0, ge=0)
    percentage: float = Field(default=0.02, ge=0, lt=1)
    activation_profit: float = Field(default=0.01, ge=0)
    # 最大追踪距离（相对极值价的比例，如 0.05 = 5%）
    max_trail_distance: Optional[float] = Field(default=None, gt=0, lt=1)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("type"), str):
            data = dict(data)
            data["type"] = data["type"].upper()
        return data


class StrategyConfig(BaseModel):
    """策略配置（扁平参数）。

    说明：
    - `strategy` 是策略工厂的 key（ema_gap_atr/advanced_atr/price_action）；
    - 所有指标周期字段都遵循 `<指标>_<period|fast|slow|...>` 命名，预热计算依赖该约定；
    - 实例冻结：校验后不可修改，需要变体时用 `model_copy(update=...)`。
    """
    strategy: str = "ema_gap_atr"
    symbol: Optional[str] = None
    timeframe: Literal["1m", "5m", "15m", "30m", "1h", "4h", "1d"] = "1d"

    # EMA
    ema_fast_period: int = Field(default=9, ge=1)
    ema_slow_period: int = Field(default=21, ge=1)

    # ATR
    atr_period: int = Field(default=14, ge=1)
    atr_multiplier_entry: float = Field(default=0.15, ge=0)
    atr_multiplier_unwind: float = Field(default=0.0, ge=0)
    atr_decline_threshold: float = Field(default=0.1, ge=0, lt=1)
    atr_expansion_threshold: float = Field(default=0.1, ge=0)
    atr_required_for_entry: bool = False

    # 强 K 线 / 跳空
    strong_candle_threshold: float = Field(default=0.5, ge=0, le=1)
    gap_up_down_threshold: float = Field(default=0.005, ge=0)
    market_open_time: Optional[str] = "09:15"

    # RSI（阈值为 0 表示关闭该条件）
    rsi_period: int = Field(default=14, ge=1)
    rsi_entry_long: float = Field(default=50.0, ge=0, le=100)
    rsi_entry_short: float = Field(default=50.0, ge=0, le=100)
    rsi_exit_long: float = Field(default=0.0, ge=0, le=100)
    rsi_exit_short: float = Field(default=0.0, ge=0, le=100)

    slope_lookback: int = Field(default=3, ge=1)

    # Supertrend / MACD（price_action；未设置时由策略使用 Supertrend(10, 2) 与 MACD(12, 26, 9)）
    supertrend_period: Optional[int] = Field(default=None, ge=1)
    supertrend_multiplier: Optional[float] = Field(default=None, gt=0)
    macd_fast: Optional[int] = Field(default=None, ge=1)
    macd_slow: Optional[int] = Field(default=None, ge=1)
    macd_signal: Optional[int] = Field(default=None, ge=1)

    # 资金与风控
    capital: float = Field(gt=0)
    max_loss_pct: Optional[float] = Field(default=None, ge=0, le=1)
    position_size: float = Field(default=1.0, gt=0)
    max_lots: int = Field(default=1, ge=1)
    pyramiding_enabled: bool = False
    exit_mode: Literal["FIFO", "LIFO"] = "FIFO"

    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)

    # 时间出场（"HH:MM"）
    mis_exit_time: Optional[str] = None
    cnc_exit_time: Optional[str] = None
    session_timezone: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("exit_mode"), str):
            data["exit_mode"] = data["exit_mode"].upper()
        if isinstance(data.get("strategy"), str):
            data["strategy"] = data["strategy"].strip().lower().replace("-", "_")
        return data

    @field_validator("mis_exit_time", "cnc_exit_time", "market_open_time")
    @classmethod
    def _validate_hhmm(cls, v: Optional[str], info) -> Optional[str]:
        return _check_hhmm(v, ctx=info.field_name)


class BacktestConfig(BaseModel):
    """回测运行配置（多 symbol）。"""
    data_dir: str = "dataset/history"
    symbols: List[str] = Field(min_length=1)
    timeframe: Literal["1m", "5m", "15m", "30m", "1h", "4h", "1d"] = "1d"
    start: str
    end: str
    max_workers: int = Field(default=4, ge=1)
    max_drawdown_halt: Optional[float] = Field(default=0.5, gt=0, le=1)
    strict_safety: bool = False
    output_dir: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class LoggingConfig(BaseModel):
    """日志配置。"""
    level: str = "INFO"
    model_config = ConfigDict(extra="forbid")


class AppConfig(BaseModel):
    """应用总配置：backtest + strategy（原始 dict，由校验器解析）+ 每个 symbol 的覆盖项。"""
    backtest: BacktestConfig
    strategy: Dict[str, Any] = Field(default_factory=dict)
    symbol_overrides: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(extra="forbid")
