"""回测绩效指标计算。

输入为已平仓交易列表与权益曲线，输出扁平 dict（所有值有限，可直接 JSON 序列化）。
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime
from statistics import mean, median, pstdev
from typing import Any, Iterable, Sequence

import numpy as np

from shared.models.models import ClosedTrade

# 无亏损交易但有盈利时的 profit factor（有限值，避免 inf 破坏 JSON）
PROFIT_FACTOR_SENTINEL = 999.0

TIMEFRAME_MINUTES: dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}

CANONICAL_METRIC_KEYS: list[str] = [
    "total_trades",
    "winning_trades",
    "losing_trades",
    "win_rate",
    "total_return",
    "total_return_percentage",
    "max_drawdown",
    "max_drawdown_amount",
    "sharpe_ratio",
    "profit_factor",
    "average_win",
    "average_loss",
    "largest_win",
    "largest_loss",
    "max_consecutive_wins",
    "max_consecutive_losses",
    "sortino_ratio",
    "calmar_ratio",
    "recovery_factor",
    "var_95",
    "var_99",
    "max_drawdown_duration",
    "average_trade_duration_hours",
    "expectancy",
    "exit_reason_breakdown",
]


def _annualization_factor(equity_curve: Sequence[tuple[datetime, float]], timeframe: str | None) -> float:
    """年化因子：优先按 timeframe（365 天 * 每天周期数）；否则按采样间隔中位数估计。"""
    minutes = TIMEFRAME_MINUTES.get(timeframe or "")
    if minutes:
        return math.sqrt(365 * 1440 / minutes)
    if len(equity_curve) < 2:
        return math.sqrt(365)
    deltas = []
    for i in range(1, len(equity_curve)):
        dt = (equity_curve[i][0] - equity_curve[i - 1][0]).total_seconds()
        if dt > 0:
            deltas.append(dt)
    if not deltas:
        return math.sqrt(365)
    med = median(deltas)
    periods_per_day = 86400 / med if med > 0 else 1
    return math.sqrt(365 * periods_per_day)


def period_returns(equity_curve: Sequence[tuple[datetime, float]]) -> list[float]:
    returns = []
    for i in range(1, len(equity_curve)):
        prev = equity_curve[i - 1][1]
        curr = equity_curve[i][1]
        if prev > 0:
            returns.append((curr / prev) - 1)
    return returns


def drawdown_stats(equity_curve: Sequence[tuple[datetime, float]]) -> dict[str, float]:
    """最大回撤（比例与金额）及最长回撤持续（样本数）。"""
    if not equity_curve:
        return {"max_drawdown": 0.0, "max_drawdown_amount": 0.0, "max_drawdown_duration": 0}
    peak = equity_curve[0][1]
    max_dd = 0.0
    max_dd_amount = 0.0
    duration = 0
    max_duration = 0
    for _, eq in equity_curve:
        if eq >= peak:
            peak = eq
            duration = 0
        else:
            duration += 1
            max_duration = max(max_duration, duration)
        dd = (peak - eq) / peak if peak > 0 else 0.0
        max_dd = max(max_dd, dd)
        max_dd_amount = max(max_dd_amount, peak - eq)
    return {"max_drawdown": max_dd, "max_drawdown_amount": max_dd_amount, "max_drawdown_duration": max_duration}


def _streaks(pnls: Iterable[float]) -> tuple[int, int]:
    best_win = best_loss = win = loss = 0
    for pnl in pnls:
        if pnl > 0:
            win += 1
            loss = 0
        elif pnl < 0:
            loss += 1
            win = 0
        else:
            win = loss = 0
        best_win = max(best_win, win)
        best_loss = max(best_loss, loss)
    return best_win, best_loss


def exit_reason_breakdown(trades: Sequence[ClosedTrade]) -> dict[str, dict[str, float]]:
    grouped: dict[str, list[float]] = defaultdict(list)
    for t in trades:
        grouped[t.exit_reason.value].append(t.pnl)
    return {
        reason: {"count": len(pnls), "total_pnl": sum(pnls), "avg_pnl": sum(pnls) / len(pnls)}
        for reason, pnls in sorted(grouped.items())
    }


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def compute_metrics(
    trades: Sequence[ClosedTrade],
    equity_curve: Sequence[tuple[datetime, float]],
    *,
    initial_capital: float,
    timeframe: str | None = None,
) -> dict[str, Any]:
    """计算完整绩效指标。

    Parameters
    ----------
    trades:
        已平仓交易（按平仓时间顺序）。
    equity_curve:
        (ts, equity) 序列。
    initial_capital:
        初始资金，用于收益率与 Calmar。
    timeframe:
        K 线周期，用于 Sharpe/Sortino 年化；未知时按采样间隔估计。

    Returns
    -------
    dict[str, Any]
        CANONICAL_METRIC_KEYS 对应的全部指标；无交易时各项为 0。
    """
    curve = sorted(equity_curve, key=lambda x: x[0])
    pnls = [float(t.pnl) for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    total_trades = len(pnls)
    total_return = float(sum(pnls))
    total_profit = sum(wins)
    total_loss_abs = abs(sum(losses))
    if total_loss_abs > 0:
        profit_factor = total_profit / total_loss_abs
    else:
        profit_factor = PROFIT_FACTOR_SENTINEL if total_profit > 0 else 0.0

    dd = drawdown_stats(curve)
    returns = period_returns(curve)
    factor = _annualization_factor(curve, timeframe)
    sharpe = 0.0
    sortino = 0.0
    var_95 = var_99 = 0.0
    if returns:
        mu = mean(returns)
        sigma = pstdev(returns) if len(returns) > 1 else 0.0
        sharpe = (mu / sigma) * factor if sigma else 0.0
        downside = [r for r in returns if r < 0]
        down_sigma = math.sqrt(sum(r * r for r in downside) / len(returns)) if downside else 0.0
        sortino = (mu / down_sigma) * factor if down_sigma else 0.0
        arr = np.asarray(returns, dtype=float)
        var_95 = float(-np.percentile(arr, 5))
        var_99 = float(-np.percentile(arr, 1))

    total_return_pct = total_return / initial_capital * 100 if initial_capital else 0.0
    calmar = (total_return_pct / 100) / dd["max_drawdown"] if dd["max_drawdown"] > 0 else 0.0
    recovery = total_return / dd["max_drawdown_amount"] if dd["max_drawdown_amount"] > 0 else 0.0

    durations = [
        (t.exit_timestamp - t.entry_timestamp).total_seconds() / 3600 for t in trades
    ]
    max_wins, max_losses = _streaks(pnls)

    metrics = {
        "total_trades": total_trades,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": len(wins) / total_trades if total_trades else 0.0,
        "total_return": total_return,
        "total_return_percentage": total_return_pct,
        "max_drawdown": dd["max_drawdown"],
        "max_drawdown_amount": dd["max_drawdown_amount"],
        "sharpe_ratio": _finite(sharpe),
        "profit_factor": profit_factor,
        "average_win": mean(wins) if wins else 0.0,
        "average_loss": -mean(losses) if losses else 0.0,
        "largest_win": max(wins) if wins else 0.0,
        "largest_loss": -min(losses) if losses else 0.0,
        "max_consecutive_wins": max_wins,
        "max_consecutive_losses": max_losses,
        "sortino_ratio": _finite(sortino),
        "calmar_ratio": _finite(calmar),
        "recovery_factor": _finite(recovery),
        "var_95": var_95,
        "var_99": var_99,
        "max_drawdown_duration": dd["max_drawdown_duration"],
        "average_trade_duration_hours": mean(durations) if durations else 0.0,
        "expectancy": mean(pnls) if pnls else 0.0,
        "exit_reason_breakdown": exit_reason_breakdown(trades),
    }
    return metrics


def validate_metrics_schema(metrics: dict[str, Any]) -> None:
    """最小 schema 校验：确保 canonical keys 齐全。"""
    missing = [k for k in CANONICAL_METRIC_KEYS if k not in metrics]
    if missing:
        raise ValueError(f"metrics missing keys: {missing}")
