"""Advanced ATR 策略：EMA 交叉入场，按 ATR 相对参考值的扩张/收缩决定加仓与出场。"""

from __future__ import annotations

from typing import Any

from algo.strategy.base import Evaluation, PositionContext, StrategyWindow
from algo.strategy.rules import (
    crossed_down,
    crossed_up,
    entries_blocked,
    entry_signal,
    exit_signal,
    rsi_entry_ok,
    rsi_exit_hit,
    time_exit_due,
)
from shared.config.schema import StrategyConfig
from shared.models.models import Direction, ExitReason, SignalType


class AdvancedAtrStrategy:
    """ATR 扩张加仓 / ATR 收缩减仓。

    参考 ATR（tracked_atr）在首次评估时初始化，之后每次出现扩张或收缩都更新为当前 ATR。
    RSI 门限使用严格比较（阈值为 0 表示关闭）。
    """

    name = "advanced_atr"

    def __init__(self):
        self.tracked_atr: float | None = None

    def indicator_specs(self, config: StrategyConfig) -> list[dict[str, Any]]:
        return [
            {"name": "ema", "period": config.ema_fast_period, "out_col": "ema_fast"},
            {"name": "ema", "period": config.ema_slow_period, "out_col": "ema_slow"},
            {"name": "atr", "period": config.atr_period, "out_col": "atr"},
            {"name": "rsi", "period": config.rsi_period, "out_col": "rsi"},
        ]

    def evaluate(self, config: StrategyConfig, window: StrategyWindow, context: PositionContext) -> Evaluation:
        snap = window.snapshot
        emas = snap.require("ema_fast", "ema_slow")
        cur = snap.require("atr", "rsi", with_previous=False)
        fast, slow = emas["ema_fast"], emas["ema_slow"]
        fast_prev, slow_prev = float(snap.prev("ema_fast")), float(snap.prev("ema_slow"))  # type: ignore[arg-type]
        atr, rsi = cur["atr"], cur["rsi"]
        candle = window.candle

        if self.tracked_atr is None or self.tracked_atr <= 0:
            self.tracked_atr = atr
        ref = self.tracked_atr
        expanding = atr > ref * (1 + config.atr_expansion_threshold)
        declining = atr < ref * (1 - config.atr_decline_threshold)
        if expanding or declining:
            self.tracked_atr = atr

        up = crossed_up(fast_prev, slow_prev, fast, slow)
        down = crossed_down(fast_prev, slow_prev, fast, slow)
        diagnostics: dict[str, Any] = {
            "fast": fast,
            "slow": slow,
            "fast_prev": fast_prev,
            "slow_prev": slow_prev,
            "atr": atr,
            "rsi": rsi,
            "reference_atr": ref,
            "tracked_atr": self.tracked_atr,
            "atr_expanding": expanding,
            "atr_declining": declining,
            "crossed_up": up,
            "crossed_down": down,
        }

        direction = context.direction
        if direction is not None:
            reason = None
            if declining:
                reason = ExitReason.ATR_DECLINE
            elif rsi_exit_hit(direction, rsi, config, strict=True):
                reason = ExitReason.RSI_EXIT
            elif (direction is Direction.LONG and down) or (direction is Direction.SHORT and up):
                reason = ExitReason.EMA_FLIP
            elif time_exit_due(candle, context.lots, config):
                reason = ExitReason.TIME_EXIT

            if reason is not None:
                diagnostics["reason_code"] = reason.value
                return Evaluation([exit_signal(direction, candle, reason, diagnostics)], diagnostics)

            trend_intact = fast > slow if direction is Direction.LONG else fast < slow
            if context.can_pyramid and expanding and trend_intact and not entries_blocked(candle, config):
                diagnostics["reason_code"] = "ATR_EXPANSION"
                return Evaluation(
                    [entry_signal(SignalType.PYRAMID, direction, candle, diagnostics, reason="ATR_EXPANSION")],
                    diagnostics,
                )
            return Evaluation([], diagnostics)

        if entries_blocked(candle, config):
            diagnostics["reason_code"] = "ENTRY_CUTOFF"
            return Evaluation([], diagnostics)

        atr_ok = expanding or not config.atr_required_for_entry
        entry_dir: Direction | None = None
        if up and atr_ok and rsi_entry_ok(Direction.LONG, rsi, config, strict=True):
            entry_dir = Direction.LONG
        elif down and atr_ok and rsi_entry_ok(Direction.SHORT, rsi, config, strict=True):
            entry_dir = Direction.SHORT
        if entry_dir is None:
            return Evaluation([], diagnostics)

        diagnostics["reason_code"] = "EMA_CROSS"
        return Evaluation(
            [entry_signal(SignalType.ENTRY, entry_dir, candle, diagnostics, reason="EMA_CROSS")],
            diagnostics,
        )
