"""策略共用的判定规则：均线交叉、RSI 门限、时间出场、开盘 K 线识别。"""

from __future__ import annotations

from datetime import datetime, time
from typing import Iterable
from zoneinfo import ZoneInfo

from shared.config.schema import StrategyConfig
from shared.models.models import Candle, Direction, ExitReason, Lot, Signal, SignalType


def crossed_up(fast_prev: float, slow_prev: float, fast: float, slow: float) -> bool:
    return fast_prev <= slow_prev and fast > slow


def crossed_down(fast_prev: float, slow_prev: float, fast: float, slow: float) -> bool:
    return fast_prev >= slow_prev and fast < slow


def rsi_entry_ok(direction: Direction, rsi: float, config: StrategyConfig, *, strict: bool = False) -> bool:
    """入场 RSI 门限；阈值为 0 时不做限制。

    strict=False：多头 rsi >= rsi_entry_long，空头 rsi <= rsi_entry_short；
    strict=True：使用严格的 > / <。
    """
    if direction is Direction.LONG:
        threshold = config.rsi_entry_long
        if threshold <= 0:
            return True
        return rsi > threshold if strict else rsi >= threshold
    threshold = config.rsi_entry_short
    if threshold <= 0:
        return True
    return rsi < threshold if strict else rsi <= threshold


def rsi_exit_hit(direction: Direction, rsi: float, config: StrategyConfig, *, strict: bool = False) -> bool:
    """持仓 RSI 出场带；阈值为 0 时关闭。"""
    if direction is Direction.LONG:
        threshold = config.rsi_exit_long
        if threshold <= 0:
            return False
        return rsi < threshold if strict else rsi <= threshold
    threshold = config.rsi_exit_short
    if threshold <= 0:
        return False
    return rsi > threshold if strict else rsi >= threshold


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def session_datetime(ts: datetime, config: StrategyConfig) -> datetime:
    """把时间戳换算到交易时区（未配置或无时区信息时原样返回）。"""
    if config.session_timezone and ts.tzinfo is not None:
        return ts.astimezone(ZoneInfo(config.session_timezone))
    return ts


def _at_or_after(ts: datetime, cutoff: str | None, config: StrategyConfig) -> bool:
    if not cutoff:
        return False
    local = session_datetime(ts, config)
    return local.time().replace(second=0, microsecond=0) >= parse_hhmm(cutoff)


def entries_blocked(candle: Candle, config: StrategyConfig) -> bool:
    """日内平仓时间（mis_exit_time）及之后不再开新仓。"""
    return _at_or_after(candle.timestamp, config.mis_exit_time, config)


def time_exit_due(candle: Candle, lots: Iterable[Lot], config: StrategyConfig) -> bool:
    """时间出场：当日开仓的 lot 看 mis_exit_time，隔日持有的 lot 看 cnc_exit_time。"""
    if not config.mis_exit_time and not config.cnc_exit_time:
        return False
    today = session_datetime(candle.timestamp, config).date()
    for lot in lots:
        opened = session_datetime(lot.entry_timestamp, config).date()
        cutoff = config.mis_exit_time if opened == today else config.cnc_exit_time
        if _at_or_after(candle.timestamp, cutoff, config):
            return True
    return False


def is_market_open_candle(candle: Candle, config: StrategyConfig) -> bool:
    if not config.market_open_time:
        return False
    local = session_datetime(candle.timestamp, config)
    opening = parse_hhmm(config.market_open_time)
    return (local.hour, local.minute) == (opening.hour, opening.minute)


def candle_strength(candle: Candle) -> float:
    """实体 / 振幅；振幅为 0 时记 0。"""
    rng = candle.high - candle.low
    if rng <= 0:
        return 0.0
    return abs(candle.close - candle.open) / rng


def slope(latest: float | None, past: float | None, lookback: int) -> float:
    if latest is None or past is None:
        return 0.0
    return (latest - past) / max(1, lookback)


def entry_signal(
    signal_type: SignalType,
    direction: Direction,
    candle: Candle,
    diagnostics: dict,
    *,
    reason: str | None = None,
    lot_metadata: dict | None = None,
) -> Signal:
    metadata = {"diagnostics": dict(diagnostics)}
    if lot_metadata:
        metadata["lot_metadata"] = dict(lot_metadata)
    return Signal(
        type=signal_type,
        direction=direction,
        price=candle.close,
        timestamp=candle.timestamp,
        reason=reason,
        metadata=metadata,
    )


def exit_signal(direction: Direction, candle: Candle, reason: ExitReason, diagnostics: dict) -> Signal:
    return Signal(
        type=SignalType.EXIT,
        direction=direction,
        price=candle.close,
        timestamp=candle.timestamp,
        reason=reason.value,
        metadata={"diagnostics": dict(diagnostics)},
    )
