from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from analysis.metrics.metrics import (
    CANONICAL_METRIC_KEYS,
    PROFIT_FACTOR_SENTINEL,
    compute_metrics,
    drawdown_stats,
    exit_reason_breakdown,
    period_returns,
    validate_metrics_schema,
)
from shared.models.models import ClosedTrade, Direction, ExitReason

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _trade(pnl: float, *, hours: int = 2, reason: ExitReason = ExitReason.EMA_FLIP, i: int = 0) -> ClosedTrade:
    entry = T0 + timedelta(hours=10 * i)
    return ClosedTrade(
        lot_id=f"T-{i}",
        symbol="TEST",
        direction=Direction.LONG,
        entry_price=100.0,
        exit_price=100.0 + pnl,
        quantity=1.0,
        entry_timestamp=entry,
        exit_timestamp=entry + timedelta(hours=hours),
        pnl=pnl,
        pnl_percent=pnl,
        exit_reason=reason,
    )


def _curve(values: list[float]) -> list[tuple[datetime, float]]:
    return [(T0 + timedelta(hours=i), v) for i, v in enumerate(values)]


def test_zero_trades_yield_zero_metrics():
    m = compute_metrics([], _curve([1000.0, 1000.0]), initial_capital=1000.0, timeframe="1h")
    validate_metrics_schema(m)
    assert m["total_trades"] == 0
    assert m["win_rate"] == 0.0
    assert m["profit_factor"] == 0.0
    assert m["sharpe_ratio"] == 0.0
    assert m["max_drawdown"] == 0.0
    assert m["exit_reason_breakdown"] == {}


def test_profit_factor_sentinel_without_losses():
    m = compute_metrics([_trade(5.0), _trade(3.0, i=1)], _curve([1000, 1005, 1008]), initial_capital=1000.0)
    assert m["profit_factor"] == PROFIT_FACTOR_SENTINEL
    assert m["win_rate"] == 1.0
    assert m["largest_loss"] == 0.0


def test_trade_statistics():
    trades = [
        _trade(10.0, i=0),
        _trade(-4.0, i=1, reason=ExitReason.TRAILING_STOP),
        _trade(6.0, i=2, hours=4),
        _trade(-2.0, i=3, reason=ExitReason.TRAILING_STOP),
        _trade(-1.0, i=4),
    ]
    m = compute_metrics(trades, _curve([1000, 1010, 1006, 1012, 1010, 1009]), initial_capital=1000.0)
    assert m["total_trades"] == 5
    assert (m["winning_trades"], m["losing_trades"]) == (2, 3)
    assert m["win_rate"] == pytest.approx(0.4)
    assert m["total_return"] == pytest.approx(9.0)
    assert m["total_return_percentage"] == pytest.approx(0.9)
    assert m["profit_factor"] == pytest.approx(16.0 / 7.0)
    assert m["average_win"] == pytest.approx(8.0)
    assert m["average_loss"] == pytest.approx(7.0 / 3.0)
    assert m["largest_win"] == 10.0
    assert m["largest_loss"] == 4.0
    assert m["max_consecutive_wins"] == 1
    assert m["max_consecutive_losses"] == 2
    assert m["expectancy"] == pytest.approx(1.8)
    assert m["average_trade_duration_hours"] == pytest.approx(2.4)


def test_drawdown_stats():
    dd = drawdown_stats(_curve([100, 120, 90, 100, 130, 117]))
    assert dd["max_drawdown"] == pytest.approx(0.25)
    assert dd["max_drawdown_amount"] == pytest.approx(30.0)
    assert dd["max_drawdown_duration"] == 2
    assert drawdown_stats([])["max_drawdown"] == 0.0


def test_ratios_are_finite_and_json_safe():
    curve = _curve([1000, 1010, 990, 1020, 1015, 1030])
    m = compute_metrics([_trade(30.0)], curve, initial_capital=1000.0, timeframe="1h")
    assert m["sharpe_ratio"] > 0
    assert m["sortino_ratio"] > 0
    assert m["calmar_ratio"] > 0
    assert m["var_99"] >= m["var_95"]
    json.dumps(m)


def test_period_returns_skip_non_positive_equity():
    assert period_returns(_curve([100, 110, 0, 50])) == pytest.approx([0.1, -1.0])


def test_exit_reason_breakdown_groups_by_reason():
    trades = [_trade(4.0), _trade(-2.0, reason=ExitReason.TRAILING_STOP), _trade(2.0, i=1)]
    out = exit_reason_breakdown(trades)
    assert list(out) == ["EMA_FLIP", "TRAILING_STOP"]
    assert out["EMA_FLIP"] == {"count": 2, "total_pnl": 6.0, "avg_pnl": 3.0}


def test_schema_validation_reports_missing_keys():
    with pytest.raises(ValueError):
        validate_metrics_schema({"total_trades": 0})
    full = compute_metrics([], [], initial_capital=1.0)
    assert set(CANONICAL_METRIC_KEYS) <= set(full)
