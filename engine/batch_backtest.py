"""多 symbol 回测协调器。

每个 symbol 一个 BacktestOrchestrator（独立配置 = 基础策略参数 + symbol 覆盖项），
在有界线程池中并发运行，结果通过 future 汇总；单个 symbol 失败不影响其他 symbol。
汇总后计算组合层面指标：组合权益、收益相关性、分散化比率、集中度。
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from algo.factors.registry import IndicatorRegistry
from analysis.metrics.metrics import compute_metrics
from engine.backtest_engine import DEFAULT_MAX_DRAWDOWN_HALT, BacktestOrchestrator, export_result
from engine.base_engine import BaseEngine, EngineResult
from market_data.feed import CandleFeed
from risk.safety import SafetyChecker
from shared.config.config_loader import merge_overrides
from shared.config.schema import AppConfig
from shared.models.models import BacktestResult
from shared.utils.json_sanitize import sanitize_for_json
from shared.utils.logging import setup_logger

EquityCurve = Sequence[tuple[datetime, float]]


@dataclass
class SymbolOutcome:
    """单个 symbol 的运行结果：成功时 result 非空，失败时 error 非空。"""
    symbol: str
    result: BacktestResult | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class MultiSymbolResult:
    outcomes: dict[str, SymbolOutcome] = field(default_factory=dict)
    portfolio_equity: list[tuple[datetime, float]] = field(default_factory=list)
    correlation_matrix: dict[str, dict[str, float]] = field(default_factory=dict)
    diversification_ratio: float = 1.0
    concentration_risk: float = 0.0
    max_correlation: float = 0.0
    min_correlation: float = 0.0
    global_metrics: dict[str, Any] = field(default_factory=dict)
    portfolio_metrics: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def results(self) -> dict[str, BacktestResult]:
        return {s: o.result for s, o in self.outcomes.items() if o.result is not None}

    @property
    def errors(self) -> dict[str, str]:
        return {s: o.error for s, o in self.outcomes.items() if o.error is not None}

    def to_dict(self) -> dict[str, Any]:
        symbols: dict[str, Any] = {}
        for sym, o in self.outcomes.items():
            if o.result is not None:
                data = o.result.to_dict()
                data.pop("trades", None)
                data.pop("equity_curve", None)
                symbols[sym] = data
            else:
                symbols[sym] = {"error": o.error, "error_type": o.error_type}
        return {
            "symbols": symbols,
            "portfolio_equity": [(ts.isoformat(), eq) for ts, eq in self.portfolio_equity],
            "correlation_matrix": self.correlation_matrix,
            "diversification_ratio": self.diversification_ratio,
            "concentration_risk": self.concentration_risk,
            "max_correlation": self.max_correlation,
            "min_correlation": self.min_correlation,
            "global_metrics": self.global_metrics,
            "portfolio_metrics": self.portfolio_metrics,
            "cancelled": self.cancelled,
        }


# ----------------------------------------------------------------------
# 组合层面指标
# ----------------------------------------------------------------------
def _equity_frame(curves: Mapping[str, EquityCurve], initial_capitals: Mapping[str, float]) -> pd.DataFrame:
    """按时间戳对齐各 symbol 权益：前向填充，首个样本之前用初始资金。"""
    series = {}
    for sym, curve in curves.items():
        if not curve:
            continue
        s = pd.Series([eq for _, eq in curve], index=pd.DatetimeIndex([ts for ts, _ in curve]), dtype=float)
        series[sym] = s[~s.index.duplicated(keep="last")]
    if not series:
        return pd.DataFrame()
    df = pd.concat(series, axis=1).sort_index().ffill()
    for sym in df.columns:
        df[sym] = df[sym].fillna(float(initial_capitals.get(sym, 0.0)))
    return df


def portfolio_equity_curve(
    curves: Mapping[str, EquityCurve],
    initial_capitals: Mapping[str, float],
) -> list[tuple[datetime, float]]:
    """组合权益曲线 = 对齐后各 symbol 权益之和。"""
    df = _equity_frame(curves, initial_capitals)
    if df.empty:
        return []
    total = df.sum(axis=1)
    return [(ts.to_pydatetime(), float(v)) for ts, v in total.items()]


def _returns_frame(curves: Mapping[str, EquityCurve], initial_capitals: Mapping[str, float]) -> pd.DataFrame:
    df = _equity_frame(curves, initial_capitals)
    if df.empty:
        return df
    return df.pct_change(fill_method=None).replace([np.inf, -np.inf], np.nan).dropna(how="all").fillna(0.0)


def correlation_matrix(returns: pd.DataFrame) -> dict[str, dict[str, float]]:
    """两两收益相关系数；常数序列（方差为 0）的相关系数按 0 处理，对角线为 1。"""
    if returns.empty:
        return {}
    corr = returns.corr().fillna(0.0)
    for sym in corr.columns:
        corr.loc[sym, sym] = 1.0
    return {a: {b: float(corr.loc[a, b]) for b in corr.columns} for a in corr.index}


def correlation_extremes(matrix: Mapping[str, Mapping[str, float]]) -> tuple[float, float]:
    """(最大, 最小) 两两相关系数；不足两个 symbol 时为 (0, 0)。"""
    syms = list(matrix)
    pairs = [matrix[a][b] for i, a in enumerate(syms) for b in syms[i + 1:]]
    if not pairs:
        return 0.0, 0.0
    return max(pairs), min(pairs)


def diversification_ratio(returns: pd.DataFrame, weights: Mapping[str, float]) -> float:
    """分散化比率 Σ wᵢσᵢ / σ_p；组合波动为 0 时返回 1.0。"""
    if returns.empty:
        return 1.0
    cols = [c for c in returns.columns if c in weights]
    if not cols:
        return 1.0
    w = np.array([weights[c] for c in cols], dtype=float)
    sigmas = returns[cols].std(ddof=0).to_numpy(dtype=float)
    sigma_p = float((returns[cols].to_numpy(dtype=float) @ w).std(ddof=0))
    weighted = float(np.dot(w, sigmas))
    if sigma_p <= 0 or not np.isfinite(sigma_p):
        return 1.0
    return weighted / sigma_p


def concentration_risk(weights: Mapping[str, float]) -> float:
    """Herfindahl 指数 Σ wᵢ²；等权时为 1/n。"""
    return float(sum(w * w for w in weights.values()))


def capital_weights(capitals: Mapping[str, float]) -> dict[str, float]:
    total = sum(capitals.values())
    if total <= 0:
        return {}
    return {sym: cap / total for sym, cap in capitals.items()}


def global_metrics(results: Mapping[str, BacktestResult], failed: int = 0) -> dict[str, Any]:
    total_trades = sum(len(r.trades) for r in results.values())
    wins = sum(1 for r in results.values() for t in r.trades if t.pnl > 0)
    pnl_by_symbol = {sym: float(sum(t.pnl for t in r.trades)) for sym, r in results.items()}
    best = max(pnl_by_symbol, key=pnl_by_symbol.get) if pnl_by_symbol else None
    worst = min(pnl_by_symbol, key=pnl_by_symbol.get) if pnl_by_symbol else None
    return {
        "total_symbols": len(results) + failed,
        "successful_symbols": len(results),
        "failed_symbols": failed,
        "total_trades": total_trades,
        "total_pnl": float(sum(pnl_by_symbol.values())),
        "win_rate": wins / total_trades if total_trades else 0.0,
        "best_symbol": best,
        "worst_symbol": worst,
    }


# ----------------------------------------------------------------------
class MultiSymbolCoordinator(BaseEngine):
    """多 symbol 并发回测。

    Parameters
    ----------
    symbols:
        回测品种列表。
    strategy:
        基础策略参数（原始 dict）。
    feed:
        K 线数据源（各线程共享，只读）。
    symbol_overrides:
        `{symbol: {参数: 值}}`，按键合并到基础参数上。
    max_workers:
        线程池大小。
    """

    def __init__(
        self,
        *,
        symbols: Sequence[str],
        strategy: Mapping[str, Any],
        feed: CandleFeed,
        symbol_overrides: Mapping[str, Mapping[str, Any]] | None = None,
        timeframe: str | None = None,
        start: str | date | datetime | None = None,
        end: str | date | datetime | None = None,
        max_workers: int = 4,
        registry: IndicatorRegistry | None = None,
        cancel_event: threading.Event | None = None,
        safety_checker: SafetyChecker | None = None,
        strict_safety: bool = False,
        max_drawdown_halt: float | None = DEFAULT_MAX_DRAWDOWN_HALT,
        output_dir: str | Path | None = None,
    ):
        super().__init__(cancel_event)
        if not symbols:
            raise ValueError("symbols must not be empty")
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.symbols = list(dict.fromkeys(symbols))
        self.strategy = dict(strategy)
        self.symbol_overrides = {k: dict(v) for k, v in (symbol_overrides or {}).items()}
        self.feed = feed
        self.timeframe = timeframe
        self.start = start
        self.end = end
        self.max_workers = max_workers
        self.registry = registry or IndicatorRegistry.with_defaults()
        self.safety_checker = safety_checker
        self.strict_safety = strict_safety
        self.max_drawdown_halt = max_drawdown_halt
        self.output_dir = output_dir
        self.logger = setup_logger("multi-symbol")

    @classmethod
    def from_app_config(cls, cfg: AppConfig, feed: CandleFeed, **kwargs: Any) -> "MultiSymbolCoordinator":
        bt = cfg.backtest
        params: dict[str, Any] = {
            "symbols": bt.symbols,
            "strategy": cfg.strategy,
            "feed": feed,
            "symbol_overrides": cfg.symbol_overrides,
            "timeframe": bt.timeframe,
            "start": bt.start,
            "end": bt.end,
            "max_workers": bt.max_workers,
            "strict_safety": bt.strict_safety,
            "max_drawdown_halt": bt.max_drawdown_halt,
            "output_dir": bt.output_dir,
        }
        params.update(kwargs)
        return cls(**params)

    def symbol_config(self, symbol: str) -> dict[str, Any]:
        """某个 symbol 的最终策略参数（未校验的 dict）。"""
        raw = merge_overrides(self.strategy, self.symbol_overrides.get(symbol))
        raw.setdefault("symbol", symbol)
        if self.timeframe:
            raw.setdefault("timeframe", self.timeframe)
        return raw

    def _orchestrator(self, symbol: str) -> BacktestOrchestrator:
        return BacktestOrchestrator(
            symbol=symbol,
            config=self.symbol_config(symbol),
            feed=self.feed,
            start=self.start,
            end=self.end,
            timeframe=self.timeframe,
            registry=self.registry,
            cancel_event=self.cancel_event,
            safety_checker=self.safety_checker,
            strict_safety=self.strict_safety,
            max_drawdown_halt=self.max_drawdown_halt,
        )

    def _run_symbol(self, symbol: str) -> BacktestResult:
        return self._orchestrator(symbol).execute()

    def execute(self) -> MultiSymbolResult:
        outcomes: dict[str, SymbolOutcome] = {}
        self.logger.info("multi-symbol backtest start: symbols=%s workers=%d", self.symbols, self.max_workers)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="backtest") as pool:
            futures = {pool.submit(self._run_symbol, sym): sym for sym in self.symbols}
            for fut in as_completed(futures):
                sym = futures[fut]
                try:
                    result = fut.result()
                except Exception as exc:
                    self.logger.error("%s backtest failed: %s: %s", sym, type(exc).__name__, exc)
                    outcomes[sym] = SymbolOutcome(symbol=sym, error=str(exc), error_type=type(exc).__name__)
                    continue
                outcomes[sym] = SymbolOutcome(symbol=sym, result=result)
                self.logger.info(
                    "%s done: trades=%d return=%.2f%%",
                    sym,
                    result.metrics.get("total_trades", 0),
                    result.metrics.get("total_return_percentage", 0.0),
                )

        ordered = {sym: outcomes[sym] for sym in self.symbols if sym in outcomes}
        return self._aggregate(ordered)

    def _capital(self, symbol: str) -> float:
        return float(self.symbol_config(symbol).get("capital", 0.0) or 0.0)

    def _aggregate(self, outcomes: dict[str, SymbolOutcome]) -> MultiSymbolResult:
        results = {s: o.result for s, o in outcomes.items() if o.result is not None}
        failed = len(outcomes) - len(results)
        capitals = {sym: self._capital(sym) for sym in results}
        curves = {sym: r.equity_curve for sym, r in results.items()}

        weights = capital_weights(capitals)
        returns = _returns_frame(curves, capitals)
        corr = correlation_matrix(returns)
        max_corr, min_corr = correlation_extremes(corr)
        portfolio = portfolio_equity_curve(curves, capitals)

        all_trades = sorted(
            (t for r in results.values() for t in r.trades),
            key=lambda t: t.exit_timestamp,
        )
        portfolio_metrics = compute_metrics(
            all_trades,
            portfolio,
            initial_capital=sum(capitals.values()),
            timeframe=self.timeframe,
        )
        out = MultiSymbolResult(
            outcomes=outcomes,
            portfolio_equity=portfolio,
            correlation_matrix=corr,
            diversification_ratio=diversification_ratio(returns, weights),
            concentration_risk=concentration_risk(weights),
            max_correlation=max_corr,
            min_correlation=min_corr,
            global_metrics=global_metrics(results, failed),
            portfolio_metrics=portfolio_metrics,
            cancelled=any(r.cancelled for r in results.values()),
        )
        self.logger.info(
            "multi-symbol backtest done: ok=%d failed=%d total_pnl=%.2f diversification=%.3f",
            len(results),
            failed,
            out.global_metrics["total_pnl"],
            out.diversification_ratio,
        )
        return out

    def run(self) -> EngineResult:
        result = self.execute()
        artifacts: dict[str, Any] = {"result": result}
        if self.output_dir:
            artifacts["exports"] = {sym: export_result(r, self.output_dir) for sym, r in result.results.items()}
        return EngineResult(summary=sanitize_for_json(result.to_dict()), artifacts=artifacts)
