"""价格行为策略：Supertrend 方向 + MACD 信号线交叉双重确认。

- 多头确认：Supertrend 转多，且 MACD 在零轴下方上穿信号线；
- 空头确认：Supertrend 转空，且 MACD 在零轴上方下穿信号线；
- 两个确认需在 2 根 K 线间隔内先后出现，且仅在空仓时入场；
- 入场时记录当根 Supertrend 值（lot 元数据 `entry_supertrend`），
  收盘价反向穿越该值或 Supertrend 反转即出场。
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from algo.strategy.base import Evaluation, PositionContext, StrategyWindow
from algo.strategy.rules import entries_blocked, entry_signal, exit_signal, time_exit_due
from shared.config.schema import StrategyConfig
from shared.models.models import Direction, ExitReason, SignalType

DEFAULT_SUPERTREND = (10, 2.0)
DEFAULT_MACD = (12, 26, 9)


def supertrend_params(config: StrategyConfig) -> tuple[int, float]:
    period = config.supertrend_period or DEFAULT_SUPERTREND[0]
    multiplier = config.supertrend_multiplier or DEFAULT_SUPERTREND[1]
    return int(period), float(multiplier)


def macd_params(config: StrategyConfig) -> tuple[int, int, int]:
    fast = config.macd_fast or DEFAULT_MACD[0]
    slow = config.macd_slow or DEFAULT_MACD[1]
    signal = config.macd_signal or DEFAULT_MACD[2]
    return int(fast), int(slow), int(signal)


class PriceActionStrategy:
    """Supertrend + MACD 价格行为策略。"""

    name = "price_action"

    def __init__(self):
        self._supertrend_seen: dict[Direction, datetime | None] = {Direction.LONG: None, Direction.SHORT: None}
        self._macd_seen: dict[Direction, datetime | None] = {Direction.LONG: None, Direction.SHORT: None}
        self._last_direction: Direction | None = None

    def indicator_specs(self, config: StrategyConfig) -> list[dict[str, Any]]:
        st_period, st_mult = supertrend_params(config)
        fast, slow, signal = macd_params(config)
        return [
            {"name": "supertrend", "period": st_period, "multiplier": st_mult, "out_col": "supertrend"},
            {"name": "macd", "fast": fast, "slow": slow, "signal": signal, "out_col": "macd"},
        ]

    def _reset_pending(self, direction: Direction) -> None:
        self._supertrend_seen[direction] = None
        self._macd_seen[direction] = None

    def _confirmed(self, direction: Direction, now: datetime, max_gap: timedelta | None) -> bool:
        st_ts, macd_ts = self._supertrend_seen[direction], self._macd_seen[direction]
        if st_ts is None or macd_ts is None:
            return False
        if max_gap is not None and now - min(st_ts, macd_ts) > max_gap:
            self._reset_pending(direction)
            return False
        return True

    def evaluate(self, config: StrategyConfig, window: StrategyWindow, context: PositionContext) -> Evaluation:
        snap = window.snapshot
        cur = snap.require("supertrend", "supertrend_dir", with_previous=False)
        macd_now = snap.require("macd", "macd_signal")
        macd, macd_sig = macd_now["macd"], macd_now["macd_signal"]
        macd_prev, sig_prev = float(snap.prev("macd")), float(snap.prev("macd_signal"))  # type: ignore[arg-type]

        candle = window.candle
        now = candle.timestamp
        st_value = cur["supertrend"]
        st_direction = Direction.LONG if cur["supertrend_dir"] > 0 else Direction.SHORT

        flipped = self._last_direction is not None and self._last_direction is not st_direction
        self._last_direction = st_direction
        self._supertrend_seen[st_direction] = now
        self._supertrend_seen[st_direction.opposite] = None

        macd_bullish = macd_prev <= sig_prev and macd > macd_sig and macd < 0 and macd_sig < 0
        macd_bearish = macd_prev >= sig_prev and macd < macd_sig and macd > 0 and macd_sig > 0
        if macd_bullish:
            self._macd_seen[Direction.LONG] = now
            self._macd_seen[Direction.SHORT] = None
        elif macd_bearish:
            self._macd_seen[Direction.SHORT] = now
            self._macd_seen[Direction.LONG] = None

        diagnostics: dict[str, Any] = {
            "supertrend": st_value,
            "supertrend_direction": st_direction.value,
            "supertrend_flipped": flipped,
            "macd": macd,
            "macd_signal": macd_sig,
            "macd_bullish_cross": macd_bullish,
            "macd_bearish_cross": macd_bearish,
        }

        direction = context.direction
        if direction is not None:
            self._reset_pending(direction)
            entry_st = context.lots[0].metadata.get("entry_supertrend")
            diagnostics["entry_supertrend"] = entry_st
            code = None
            if entry_st is not None and direction is Direction.LONG and candle.close < entry_st:
                code = "PRICE_BELOW_ENTRY_SUPERTREND"
            elif entry_st is not None and direction is Direction.SHORT and candle.close > entry_st:
                code = "PRICE_ABOVE_ENTRY_SUPERTREND"
            elif flipped and st_direction is direction.opposite:
                code = "SUPERTREND_FLIP"

            if code is not None:
                diagnostics["reason_code"] = code
                return Evaluation(
                    [exit_signal(direction, candle, ExitReason.OPPOSITE_SIGNAL, diagnostics)],
                    diagnostics,
                )
            if time_exit_due(candle, context.lots, config):
                diagnostics["reason_code"] = ExitReason.TIME_EXIT.value
                return Evaluation([exit_signal(direction, candle, ExitReason.TIME_EXIT, diagnostics)], diagnostics)
            return Evaluation([], diagnostics)

        if entries_blocked(candle, config):
            diagnostics["reason_code"] = "ENTRY_CUTOFF"
            return Evaluation([], diagnostics)

        max_gap = None
        if window.prev_candle is not None:
            interval = now - window.prev_candle.timestamp
            if interval > timedelta(0):
                max_gap = interval * 2

        for entry_dir in (Direction.LONG, Direction.SHORT):
            if not self._confirmed(entry_dir, now, max_gap):
                continue
            self._reset_pending(Direction.LONG)
            self._reset_pending(Direction.SHORT)
            diagnostics["reason_code"] = "SUPERTREND_MACD_CONFIRMED"
            signal = entry_signal(
                SignalType.ENTRY,
                entry_dir,
                candle,
                diagnostics,
                reason="SUPERTREND_MACD_CONFIRMED",
                lot_metadata={"entry_supertrend": st_value},
            )
            return Evaluation([signal], diagnostics)
        return Evaluation([], diagnostics)
