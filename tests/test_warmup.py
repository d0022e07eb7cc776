from __future__ import annotations

import pytest

from algo.warmup.calculator import (
    STABILITY_BUFFER,
    detect_indicators,
    match_period_rule,
    warmup_analysis,
    warmup_period,
)
from shared.config.schema import StrategyConfig


def test_warmup_uses_longest_period_plus_buffer():
    cfg = {"ema_fast_period": 9, "ema_slow_period": 21, "rsi_period": 14, "atr_period": 14}
    assert warmup_period(cfg) == 21 + STABILITY_BUFFER


def test_warmup_without_indicators_is_buffer_only():
    assert warmup_period({"capital": 100000, "max_lots": 3}) == STABILITY_BUFFER
    assert warmup_period({}, buffer=5) == 5


def test_warmup_walks_nested_structures_and_ignores_non_numbers():
    cfg = {
        "indicators": [
            {"name": "macd", "macd_slow": 26, "macd_signal": 9},
            {"bollinger_period": 40, "label": "bb_period"},
        ],
        "filters": {"volume_lookback": 55, "enabled_period": True},
        "ema_fast_period": "50",
    }
    detected = {d.path: d for d in detect_indicators(cfg)}
    assert detected["indicators[0].macd_slow"].type == "macd"
    assert detected["indicators[1].bollinger_period"].type == "oscillator"
    assert detected["filters.volume_lookback"].type == "generic"
    assert "filters.enabled_period" not in detected
    assert warmup_period(cfg) == 55 + STABILITY_BUFFER


def test_warmup_ignores_non_positive_periods():
    assert warmup_period({"rsi_period": 0, "atr_period": -5}) == STABILITY_BUFFER


def test_warmup_rounds_fractional_periods_up():
    assert warmup_period({"custom_window": 12.2}, buffer=0) == 13


def test_warmup_is_deterministic_for_pydantic_config():
    cfg = StrategyConfig(capital=10000, ema_fast_period=5, ema_slow_period=30, slope_lookback=3)
    first = warmup_period(cfg)
    assert first == warmup_period(cfg)
    assert first == warmup_period(cfg.model_dump())
    assert first == 30 + STABILITY_BUFFER


@pytest.mark.parametrize(
    "key,expected",
    [
        ("ema_fast_period", "ema"),
        ("macd_signal", "macd"),
        ("supertrend_period", "oscillator"),
        ("slope_lookback", "generic"),
        ("atr_multiplier_entry", None),
    ],
)
def test_match_period_rule(key, expected):
    rule = match_period_rule(key)
    assert (rule.type if rule else None) == expected


def test_warmup_analysis_reports_detected_indicators():
    out = warmup_analysis({"ema_slow_period": 120})
    assert out["warmup_period"] == 130
    assert out["max_period"] == 120
    assert out["detected_indicators"][0]["type"] == "ema"
    assert any("shorter" in r for r in out["recommendations"])

    empty = warmup_analysis({})
    assert any("No indicators detected" in r for r in empty["recommendations"])
