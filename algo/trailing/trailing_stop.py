"""移动止损引擎（每个 lot 一个状态机：INACTIVE -> ARMED -> TRIGGERED）。

核心是纯函数 `update_lot(lot, candle, atr, config) -> (updated_lot, exit_signal | None)`，
lot 之间没有顺序依赖，一次可以处理任意多个 lot。

单根 K 线内的处理顺序：
1. 已 ARMED 的 lot 先用之前 K 线确定的止损价检查是否被击穿（多头看 low，空头看 high）；
2. 更新入场以来的最高/最低价；
3. 收盘浮盈达到 activation_profit 时 ARMED；
4. ARMED 状态下重算止损价，只允许向有利方向移动。

TRIGGERED 的 lot 只有被账本移除才算结束；若平仓单被拒、lot 仍在持仓中，
下一根 K 线会按 ARMED 重新检查并再次发出 EXIT。
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Iterable

from shared.config.schema import TrailingStopConfig
from shared.models.models import Candle, Direction, ExitReason, Lot, Signal, SignalType, TrailingState
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("trailing-stop")


def _valid_atr(atr: float | None) -> bool:
    return atr is not None and not math.isnan(atr) and atr > 0


def _trail_distance(extreme: float, atr: float | None, config: TrailingStopConfig) -> float | None:
    """止损价相对极值价的距离；ATR 模式下 ATR 不可用时返回 None。"""
    if config.type == "PERCENTAGE":
        distance = extreme * config.percentage
    else:
        if not _valid_atr(atr):
            return None
        distance = float(atr) * config.atr_multiplier  # type: ignore[arg-type]
    if config.max_trail_distance:
        distance = min(distance, extreme * config.max_trail_distance)
    return distance


def _breached(lot: Lot, candle: Candle) -> bool:
    if lot.trailing_stop_price is None:
        return False
    if lot.direction is Direction.LONG:
        return candle.low <= lot.trailing_stop_price
    return candle.high >= lot.trailing_stop_price


def _fill_price(lot: Lot, candle: Candle) -> float:
    """止损成交价：止损价；若开盘已跳空越过止损价则按开盘价。"""
    stop = float(lot.trailing_stop_price)  # type: ignore[arg-type]
    if lot.direction is Direction.LONG:
        return min(stop, candle.open)
    return max(stop, candle.open)


def update_lot(
    lot: Lot,
    candle: Candle,
    atr: float | None,
    config: TrailingStopConfig,
) -> tuple[Lot, Signal | None]:
    """推进单个 lot 的移动止损状态。

    Parameters
    ----------
    lot:
        当前 lot（不会被修改）。
    candle:
        当前 K 线。
    atr:
        当前 ATR；None/NaN/<=0 视为“暂不可用”。
    config:
        移动止损配置；未启用时原样返回。

    Returns
    -------
    tuple[Lot, Signal | None]
        更新后的 lot；触发时附带 EXIT 信号（reason=TRAILING_STOP，只针对该 lot）。
    """
    if not config.enabled:
        return lot, None
    if lot.trailing_state is TrailingState.TRIGGERED:
        # 仍在持仓中：上一次止损平仓未成交，重新挂起继续跟踪
        lot = replace(lot, trailing_state=TrailingState.ARMED)

    if lot.trailing_state is TrailingState.ARMED and _breached(lot, candle):
        price = _fill_price(lot, candle)
        triggered = replace(lot, trailing_state=TrailingState.TRIGGERED)
        signal = Signal(
            type=SignalType.EXIT,
            direction=lot.direction,
            price=price,
            timestamp=candle.timestamp,
            reason=ExitReason.TRAILING_STOP.value,
            metadata={
                "lot_id": lot.id,
                "trailing_stop_price": lot.trailing_stop_price,
                "highest_price_since_entry": lot.highest_price_since_entry,
                "lowest_price_since_entry": lot.lowest_price_since_entry,
            },
            lot_ids=(lot.id,),
        )
        return triggered, signal

    highest = max(lot.highest_price_since_entry, candle.high)
    lowest = min(lot.lowest_price_since_entry, candle.low)
    updated = replace(lot, highest_price_since_entry=highest, lowest_price_since_entry=lowest)

    if updated.trailing_state is TrailingState.INACTIVE:
        if lot.entry_price <= 0:
            return updated, None
        profit_pct = (candle.close - lot.entry_price) * lot.direction.sign / lot.entry_price
        if profit_pct < config.activation_profit:
            return updated, None
        extreme = highest if lot.direction is Direction.LONG else lowest
        if _trail_distance(extreme, atr, config) is None:
            # ATR 尚不可用：保持 INACTIVE
            return updated, None
        updated = replace(updated, trailing_state=TrailingState.ARMED, is_trailing_active=True)

    extreme = updated.highest_price_since_entry if lot.direction is Direction.LONG else updated.lowest_price_since_entry
    distance = _trail_distance(extreme, atr, config)
    if distance is None:
        return updated, None

    if lot.direction is Direction.LONG:
        candidate = extreme - distance
        current = updated.trailing_stop_price
        new_stop = candidate if current is None else max(current, candidate)
    else:
        candidate = extreme + distance
        current = updated.trailing_stop_price
        new_stop = candidate if current is None else min(current, candidate)

    return replace(updated, trailing_stop_price=new_stop), None


def process_lots(
    lots: Iterable[Lot],
    candle: Candle,
    atr: float | None,
    config: TrailingStopConfig,
) -> tuple[list[Lot], list[Signal]]:
    """批量推进；返回 (更新后的 lots, 触发的 EXIT 信号)。"""
    updated: list[Lot] = []
    exits: list[Signal] = []
    for lot in lots:
        new_lot, signal = update_lot(lot, candle, atr, config)
        updated.append(new_lot)
        if signal is not None:
            exits.append(signal)
            _LOGGER.debug(
                "trailing stop hit: lot=%s dir=%s entry=%.4f stop=%.4f exit=%.4f",
                lot.id,
                lot.direction.value,
                lot.entry_price,
                lot.trailing_stop_price,
                signal.price,
            )
    return updated, exits


class TrailingStopEngine:
    """按配置处理移动止损；配置未启用时是空操作。"""

    def __init__(self, config: TrailingStopConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def process(self, lots: Iterable[Lot], candle: Candle, atr: float | None) -> tuple[list[Lot], list[Signal]]:
        return process_lots(lots, candle, atr, self.config)


class NoOpTrailingStopEngine(TrailingStopEngine):
    def process(self, lots: Iterable[Lot], candle: Candle, atr: float | None) -> tuple[list[Lot], list[Signal]]:
        return list(lots), []


def build_trailing_stop_engine(config: TrailingStopConfig) -> TrailingStopEngine:
    """按配置返回移动止损引擎：未启用 -> 空操作；未知类型 -> ValueError。"""
    if not config.enabled:
        return NoOpTrailingStopEngine(config)
    if config.type not in ("ATR", "PERCENTAGE"):
        raise ValueError(f"Unsupported trailing stop type: {config.type}")
    return TrailingStopEngine(config)
