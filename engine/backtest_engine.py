"""单 symbol 回测编排（BacktestOrchestrator）。

流程：校验配置 → 加载 K 线 → 指标预计算 → 逐根 K 线（预热 / 策略 / 移动止损 / 账本 / 盯市）
→ 数据结束强制平仓 → 指标。
"""

from __future__ import annotations

import json
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Mapping

import pandas as pd

from algo.factors.engine import IndicatorEngine
from algo.factors.registry import IndicatorRegistry
from algo.strategy.base import PositionContext, StrategyEvaluator, StrategyWindow
from algo.strategy.registry import build_evaluator
from algo.trailing.trailing_stop import build_trailing_stop_engine
from algo.warmup.calculator import warmup_period
from analysis.metrics.metrics import compute_metrics
from broker.abstract_broker import OrderExecutor
from broker.backtest_broker import BacktestExecutor
from broker.ledger import PositionLedger
from engine.base_engine import BaseEngine, EngineResult
from engine.signal_pipeline import execute_signals, prepare_signals
from market_data.feed import CandleFeed, sanitize_candles
from risk.safety import SafetyChecker, SafetyReport
from shared.config.schema import StrategyConfig
from shared.config.validation import Severity, parse_strategy_config
from shared.errors import ConfigValidationError, FeedError, InsufficientDataError
from shared.models.models import BacktestResult, Candle, ExitReason
from shared.utils.json_sanitize import sanitize_for_json
from shared.utils.logging import setup_logger

ATR_COLUMN = "atr"
RETURN_WARNING_PCT = 1000.0
DEFAULT_MAX_DRAWDOWN_HALT = 0.5


def _append_equity_point(equity_curve: list[tuple[datetime, float]], ts: datetime, equity: float) -> None:
    """
    追加（或覆盖）权益曲线点：
    - 同一 ts 重复写入时，覆盖最后一个点，避免重复 ts 造成指标波动。
    """
    if equity_curve and equity_curve[-1][0] == ts:
        equity_curve[-1] = (ts, equity)
    else:
        equity_curve.append((ts, equity))


def _spec_periods(specs: list[dict[str, Any]]) -> dict[str, Any]:
    """把指标描述展开成 `<指标>_<参数>` 形式，供预热计算识别。"""
    flat: dict[str, Any] = {}
    for i, spec in enumerate(specs):
        name = str(spec.get("name", "")).lower()
        params = spec.get("params") if isinstance(spec.get("params"), Mapping) else spec
        for k, v in params.items():
            if k in ("name", "type", "params", "out_col", "price_col"):
                continue
            flat[f"{i}_{name}_{k}"] = v
    return flat


def _with_trailing_atr(specs: list[dict[str, Any]], config: StrategyConfig) -> list[dict[str, Any]]:
    specs = list(specs)
    if not any(spec.get("out_col") == ATR_COLUMN for spec in specs):
        specs.append({"name": "atr", "period": config.atr_period, "out_col": ATR_COLUMN})
    return specs


def _export_equity_csv(equity_curve: list[tuple[datetime, float]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = []
    peak = None
    for ts, eq in equity_curve:
        peak = eq if peak is None else max(peak, eq)
        dd = peak - eq
        data.append(
            {
                "ts": ts.isoformat(),
                "equity": eq,
                "drawdown": dd,
                "drawdown_pct": dd / peak if peak > 0 else 0.0,
            }
        )
    pd.DataFrame(data, columns=["ts", "equity", "drawdown", "drawdown_pct"]).to_csv(path, index=False)


def _export_trades_csv(result: BacktestResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [t.to_dict() for t in result.trades]
    columns = [
        "lot_id", "symbol", "direction", "entry_price", "exit_price", "quantity",
        "entry_timestamp", "exit_timestamp", "pnl", "pnl_percent", "exit_reason",
    ]
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)


def export_result(result: BacktestResult, output_dir: str | Path) -> dict[str, str]:
    """导出单 symbol 结果：trades.csv / equity.csv / summary.json。"""
    out = Path(output_dir) / result.symbol
    out.mkdir(parents=True, exist_ok=True)
    trades_path = out / "trades.csv"
    equity_path = out / "equity.csv"
    summary_path = out / "summary.json"
    _export_trades_csv(result, trades_path)
    _export_equity_csv(result.equity_curve, equity_path)
    payload = sanitize_for_json({k: v for k, v in result.to_dict().items() if k not in ("trades", "equity_curve")})
    summary_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, allow_nan=False), encoding="utf-8")
    return {"trades_csv": str(trades_path), "equity_csv": str(equity_path), "summary_json": str(summary_path)}


class BacktestOrchestrator(BaseEngine):
    """单 symbol 回测引擎。

    Parameters
    ----------
    symbol:
        品种代码。
    config:
        策略配置（StrategyConfig 或原始 dict；dict 会先经过校验）。
    feed:
        K 线数据源。
    start, end:
        回测区间（传给数据源；同时用于日期范围安全检查）。
    registry:
        指标注册表；默认 `IndicatorRegistry.with_defaults()`。
    executor:
        下单执行器；默认 `BacktestExecutor`。
    cancel_event:
        取消信号，每根 K 线开始时检查。
    strict_safety:
        严格模式：HIGH 级别安全检查未通过也拒绝运行。
    max_drawdown_halt:
        回撤熔断阈值（比例）；None 关闭。
    evaluator:
        直接注入策略实例（默认按 `config.strategy` 从注册表构建）。
    output_dir:
        给出时 `run()` 会导出 CSV/JSON 产物。
    """

    def __init__(
        self,
        *,
        symbol: str,
        config: StrategyConfig | Mapping[str, Any],
        feed: CandleFeed,
        start: str | date | datetime | None = None,
        end: str | date | datetime | None = None,
        timeframe: str | None = None,
        registry: IndicatorRegistry | None = None,
        executor: OrderExecutor | None = None,
        cancel_event: threading.Event | None = None,
        safety_checker: SafetyChecker | None = None,
        strict_safety: bool = False,
        max_drawdown_halt: float | None = DEFAULT_MAX_DRAWDOWN_HALT,
        evaluator: StrategyEvaluator | None = None,
        output_dir: str | Path | None = None,
    ):
        super().__init__(cancel_event)
        self.symbol = symbol
        self._raw_config = config
        self.feed = feed
        self.start = start
        self.end = end
        self._timeframe = timeframe
        self.registry = registry or IndicatorRegistry.with_defaults()
        self.executor = executor or BacktestExecutor(prefix=symbol)
        self.safety_checker = safety_checker or SafetyChecker()
        self.strict_safety = strict_safety
        self.max_drawdown_halt = max_drawdown_halt
        self._evaluator = evaluator
        self.output_dir = output_dir
        self.logger = setup_logger("backtest")

        self.config: StrategyConfig | None = None
        self.safety_report: SafetyReport | None = None
        self.ledger: PositionLedger | None = None

    # ------------------------------------------------------------------
    def validate(self) -> SafetyReport:
        """解析配置并做安全检查；不通过时抛 ConfigValidationError（携带报告）。"""
        config = parse_strategy_config(self._raw_config)
        report = self.safety_checker.check(config, self.start, self.end)
        self.config = config
        self.safety_report = report
        if not report.can_proceed(strict=self.strict_safety):
            blocking = report.failed_with(Severity.CRITICAL)
            if self.strict_safety:
                blocking += report.failed_with(Severity.HIGH)
            failed = [c.name for c in blocking]
            raise ConfigValidationError(f"Safety checks failed for {self.symbol}: {', '.join(failed)}", report=report)
        return report

    def _load_candles(self, timeframe: str) -> tuple[list[Candle], int]:
        raw = self.feed.get_historical_candles(self.symbol, timeframe, self.start, self.end)
        candles, dropped = sanitize_candles(raw, symbol=self.symbol)
        if not candles:
            raise FeedError(f"No candles for {self.symbol} {timeframe}")
        return candles, dropped

    def execute(self) -> BacktestResult:
        """运行回测并返回 BacktestResult。

        Raises
        ------
        ConfigValidationError
            配置结构非法或安全检查未通过。
        FeedError
            数据源无数据或读取失败。
        """
        self.validate()
        config = self.config
        assert config is not None
        timeframe = self._timeframe or config.timeframe
        candles, dropped = self._load_candles(timeframe)

        evaluator = self._evaluator or build_evaluator(config.strategy)
        specs = _with_trailing_atr(evaluator.indicator_specs(config), config)
        indicators = IndicatorEngine(self.registry, specs)
        indicators.prime(candles)
        warmup = max(warmup_period(config), warmup_period(_spec_periods(specs)))

        ledger = PositionLedger.from_config(self.symbol, config)
        self.ledger = ledger
        trailing = build_trailing_stop_engine(config.trailing_stop)
        result = BacktestResult(symbol=self.symbol, timeframe=timeframe, warmup_period=warmup)
        result.candles_skipped = dropped

        capital = float(config.capital)
        peak = capital
        last_candle: Candle | None = None
        self.logger.info(
            "%s backtest start: strategy=%s candles=%d warmup=%d",
            self.symbol,
            config.strategy,
            len(candles),
            warmup,
        )

        for i, candle in enumerate(candles):
            if self.cancel_requested:
                result.cancelled = True
                self.logger.warning("%s backtest cancelled at candle %d/%d", self.symbol, i, len(candles))
                break
            last_candle = candle
            result.candles_processed += 1
            if i < warmup:
                result.candles_skipped += 1
                continue

            window = StrategyWindow(
                candle=candle,
                snapshot=indicators.snapshot(i),
                index=i,
                prev_candle=candles[i - 1] if i > 0 else None,
                lookup=lambda offset, name, i=i: indicators.value(i - offset, name),
            )
            context = PositionContext.from_lots(ledger.lots, config)
            try:
                generated = evaluator.evaluate(config, window, context).signals
            except InsufficientDataError as exc:
                self.logger.debug("%s candle %s skipped: %s", self.symbol, candle.timestamp.isoformat(), exc)
                result.candles_skipped += 1
                generated = []

            lots, trailing_exits = trailing.process(ledger.lots, candle, indicators.value(i, ATR_COLUMN))
            ledger.replace_lots(lots)

            signals = prepare_signals(trailing_exits, generated)
            result.trades.extend(
                execute_signals(signals=signals, ledger=ledger, candle=candle, executor=self.executor)
            )

            equity = capital + ledger.realized_pnl + ledger.unrealized_pnl(candle.close)
            _append_equity_point(result.equity_curve, candle.timestamp, equity)
            peak = max(peak, equity)

            if self.max_drawdown_halt and peak > 0 and (peak - equity) / peak >= self.max_drawdown_halt:
                result.trades.extend(
                    ledger.close_all(candle.close, candle.timestamp, ExitReason.MAX_DRAWDOWN, candle, self.executor)
                )
                equity = capital + ledger.realized_pnl
                _append_equity_point(result.equity_curve, candle.timestamp, equity)
                result.halted = True
                msg = f"max drawdown {(peak - equity) / peak:.2%} reached halt threshold {self.max_drawdown_halt:.2%}"
                result.errors.append(msg)
                self.logger.warning("%s halted: %s", self.symbol, msg)
                break

        if not result.cancelled and not result.halted and last_candle is not None and ledger.position.is_open:
            result.trades.extend(
                ledger.close_all(
                    last_candle.close, last_candle.timestamp, ExitReason.END_OF_DATA, last_candle, self.executor
                )
            )
            _append_equity_point(result.equity_curve, last_candle.timestamp, capital + ledger.realized_pnl)

        result.rejected_signals = len(ledger.rejected)
        result.metrics = compute_metrics(
            result.trades,
            result.equity_curve,
            initial_capital=capital,
            timeframe=timeframe,
        )
        ret_pct = result.metrics["total_return_percentage"]
        if ret_pct > RETURN_WARNING_PCT:
            self.logger.warning("%s suspicious return %.2f%% (> %.0f%%)", self.symbol, ret_pct, RETURN_WARNING_PCT)
        self.logger.info(
            "%s backtest done: trades=%d return=%.2f (%.2f%%) max_dd=%.2f%% cancelled=%s halted=%s",
            self.symbol,
            result.metrics["total_trades"],
            result.metrics["total_return"],
            ret_pct,
            result.metrics["max_drawdown"] * 100,
            result.cancelled,
            result.halted,
        )
        return result

    def run(self) -> EngineResult:
        result = self.execute()
        summary = sanitize_for_json({k: v for k, v in result.to_dict().items() if k not in ("trades", "equity_curve")})
        artifacts: dict[str, Any] = {"result": result}
        if self.output_dir:
            artifacts.update(export_result(result, self.output_dir))
        return EngineResult(summary=summary, artifacts=artifacts)
