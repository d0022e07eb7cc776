"""EMA 间距 / ATR 策略。

逻辑：
1. gap_norm = |EMA_fast - EMA_slow| / ATR，衡量趋势强度；
2. 标准入场：EMA 金叉/死叉且 gap_norm >= atr_multiplier_entry，再过 RSI 门限；
3. 跳空入场：开盘 K 线相对前收盘跳空 >= gap_up_down_threshold 且实体占比 >= strong_candle_threshold；
4. 持仓时按优先级检查出场：ATR 收敛 -> RSI 出场带 -> 反向交叉 -> 时间出场；
5. 无出场时，趋势仍在且 gap_norm 相对参考值扩张 atr_expansion_threshold 则加仓。
"""

from __future__ import annotations

from typing import Any

from algo.strategy.base import Evaluation, PositionContext, StrategyWindow
from algo.strategy.rules import (
    candle_strength,
    crossed_down,
    crossed_up,
    entries_blocked,
    entry_signal,
    exit_signal,
    is_market_open_candle,
    rsi_entry_ok,
    rsi_exit_hit,
    slope,
    time_exit_due,
)
from shared.config.schema import StrategyConfig
from shared.models.models import Direction, ExitReason, SignalType


class EmaGapAtrStrategy:
    """EMA 间距按 ATR 归一化的趋势策略。"""

    name = "ema_gap_atr"

    def __init__(self):
        # 最近一次开仓/加仓时的 gap_norm，作为加仓扩张的参考
        self._ref_gap: float | None = None

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
        gap_norm = abs(fast - slow) / atr if atr > 0 else 0.0
        up = crossed_up(fast_prev, slow_prev, fast, slow)
        down = crossed_down(fast_prev, slow_prev, fast, slow)
        fast_slope = slope(fast, window.value_back("ema_fast", config.slope_lookback), config.slope_lookback)

        diagnostics: dict[str, Any] = {
            "fast": fast,
            "slow": slow,
            "fast_prev": fast_prev,
            "slow_prev": slow_prev,
            "atr": atr,
            "rsi": rsi,
            "gap_norm": gap_norm,
            "fast_slope": fast_slope,
            "crossed_up": up,
            "crossed_down": down,
            "ref_gap_norm": self._ref_gap,
        }

        direction = context.direction
        if direction is not None:
            reason = None
            if config.atr_multiplier_unwind > 0 and gap_norm <= config.atr_multiplier_unwind:
                reason = ExitReason.ATR_DECLINE
            elif rsi_exit_hit(direction, rsi, config):
                reason = ExitReason.RSI_EXIT
            elif (direction is Direction.LONG and down) or (direction is Direction.SHORT and up):
                reason = ExitReason.EMA_FLIP
            elif time_exit_due(candle, context.lots, config):
                reason = ExitReason.TIME_EXIT

            if reason is not None:
                self._ref_gap = None
                diagnostics["reason_code"] = reason.value
                return Evaluation([exit_signal(direction, candle, reason, diagnostics)], diagnostics)

            if context.can_pyramid and not entries_blocked(candle, config):
                trend_intact = fast > slow if direction is Direction.LONG else fast < slow
                ref = self._ref_gap
                if trend_intact and ref is not None and gap_norm > ref * (1 + config.atr_expansion_threshold):
                    self._ref_gap = gap_norm
                    diagnostics["reason_code"] = "GAP_EXPANSION"
                    return Evaluation(
                        [entry_signal(SignalType.PYRAMID, direction, candle, diagnostics, reason="GAP_EXPANSION")],
                        diagnostics,
                    )
            return Evaluation([], diagnostics)

        if entries_blocked(candle, config):
            diagnostics["reason_code"] = "ENTRY_CUTOFF"
            return Evaluation([], diagnostics)

        entry_dir: Direction | None = None
        code = None
        if up and gap_norm >= config.atr_multiplier_entry and rsi_entry_ok(Direction.LONG, rsi, config):
            entry_dir, code = Direction.LONG, "EMA_CROSS"
        elif down and gap_norm >= config.atr_multiplier_entry and rsi_entry_ok(Direction.SHORT, rsi, config):
            entry_dir, code = Direction.SHORT, "EMA_CROSS"
        else:
            entry_dir = self._gap_entry(config, window, rsi, diagnostics)
            code = "OPENING_GAP" if entry_dir is not None else None

        if entry_dir is None:
            return Evaluation([], diagnostics)

        self._ref_gap = gap_norm
        diagnostics["reason_code"] = code
        return Evaluation([entry_signal(SignalType.ENTRY, entry_dir, candle, diagnostics, reason=code)], diagnostics)

    def _gap_entry(
        self,
        config: StrategyConfig,
        window: StrategyWindow,
        rsi: float,
        diagnostics: dict[str, Any],
    ) -> Direction | None:
        candle, prev = window.candle, window.prev_candle
        if prev is None or prev.close <= 0 or not is_market_open_candle(candle, config):
            return None
        gap_pct = abs(candle.open - prev.close) / prev.close
        strength = candle_strength(candle)
        diagnostics.update({"gap_percent": gap_pct, "candle_strength": strength})
        if gap_pct < config.gap_up_down_threshold or strength < config.strong_candle_threshold:
            return None
        if candle.open > prev.close and rsi_entry_ok(Direction.LONG, rsi, config):
            return Direction.LONG
        if candle.open < prev.close and rsi_entry_ok(Direction.SHORT, rsi, config):
            return Direction.SHORT
        return None
