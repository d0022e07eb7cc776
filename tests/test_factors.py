from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from algo.factors.atr import ATRFactor
from algo.factors.ema import EMAFactor
from algo.factors.engine import IndicatorEngine, IndicatorSnapshot
from algo.factors.macd import MACDFactor
from algo.factors.registry import IndicatorRegistry
from algo.factors.rsi import RSIFactor
from algo.factors.supertrend import SupertrendFactor
from shared.errors import InsufficientDataError

from conftest import build_candles


def _df(prices: list[float]) -> pd.DataFrame:
    ts0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    rows = []
    for i, p in enumerate(prices):
        rows.append(
            {
                "ts": ts0 + timedelta(hours=i),
                "symbol": "BTCUSDT",
                "open": p,
                "high": p + 1,
                "low": p - 1,
                "close": p,
                "volume": 1.0,
            }
        )
    return pd.DataFrame(rows)


def test_rsi_factor_outputs_in_0_100_after_warmup():
    df = _df([1, 2, 3, 2, 1, 2, 3, 4, 3, 2, 3, 4, 5, 6, 7])
    out = RSIFactor(period=5, price_col="close", out_col="rsi5").compute(df)
    s = out["rsi5"].dropna()
    assert not s.empty
    assert (s >= 0).all()
    assert (s <= 100).all()


def test_rsi_factor_handles_one_sided_windows():
    up = RSIFactor(period=3, out_col="rsi").compute(_df([1, 2, 3, 4, 5]))
    flat = RSIFactor(period=3, out_col="rsi").compute(_df([5, 5, 5, 5, 5]))
    assert up["rsi"].iloc[-1] == 100.0
    assert flat["rsi"].iloc[-1] == 50.0


def test_atr_factor_adds_column():
    df = _df([10, 11, 12, 11, 9, 10, 11])
    out = ATRFactor(period=3, out_col="atr3").compute(df)
    assert "atr3" in out.columns
    assert out["atr3"].isna().sum() == 2


def test_atr_wilder_smoothing_differs_from_sma():
    df = _df([10, 11, 15, 11, 9, 14, 11, 12])
    sma = ATRFactor(period=3, out_col="a").compute(df.copy())["a"]
    wilder = ATRFactor(period=3, smoothing="wilder", out_col="a").compute(df.copy())["a"]
    assert not np.allclose(sma.dropna().to_numpy(), wilder.dropna().to_numpy())
    with pytest.raises(ValueError):
        ATRFactor(period=3, smoothing="ema")


def test_ema_factor_adds_column():
    df = _df([1, 2, 3, 4, 5])
    out = EMAFactor(period=3, out_col="ema3").compute(df)
    assert "ema3" in out.columns
    assert out["ema3"].isna().sum() == 2


def test_ema_factor_default_column_name_and_invalid_period():
    assert EMAFactor(period=7).output_columns() == ["ema_7"]
    with pytest.raises(ValueError):
        EMAFactor(period=0)


def test_macd_factor_outputs_three_columns():
    df = _df([float(x) for x in range(1, 41)])
    out = MACDFactor(fast=3, slow=6, signal=2, out_col="m").compute(df)
    assert {"m", "m_signal", "m_hist"} <= set(out.columns)
    last = out.iloc[-1]
    assert last["m"] > 0
    assert last["m_hist"] == pytest.approx(last["m"] - last["m_signal"])
    with pytest.raises(ValueError):
        MACDFactor(fast=6, slow=3)


def test_supertrend_direction_follows_trend():
    rising = SupertrendFactor(period=3, multiplier=1.0).compute(_df([float(x) for x in range(100, 130)]))
    falling = SupertrendFactor(period=3, multiplier=1.0).compute(_df([float(x) for x in range(130, 100, -1)]))
    assert rising["supertrend_dir"].iloc[-1] == 1.0
    assert rising["supertrend"].iloc[-1] < rising["close"].iloc[-1]
    assert falling["supertrend_dir"].iloc[-1] == -1.0
    assert falling["supertrend"].iloc[-1] > falling["close"].iloc[-1]


def test_factors_are_causal():
    prices = [100 + 5 * np.sin(i / 3) for i in range(60)]
    full = _df(prices)
    prefix = _df(prices[:40])
    for factor in (
        EMAFactor(period=5, out_col="x"),
        RSIFactor(period=5, out_col="x"),
        ATRFactor(period=5, out_col="x"),
        SupertrendFactor(period=5, out_col="x"),
    ):
        a = factor.compute(full.copy())["x"].iloc[:40].to_numpy()
        b = factor.compute(prefix.copy())["x"].to_numpy()
        np.testing.assert_allclose(a, b, equal_nan=True)


def test_registry_builds_from_flat_and_nested_specs():
    registry = IndicatorRegistry.with_defaults()
    factors = registry.build(
        [
            {"name": "ema", "period": 9, "out_col": "ema_fast", "ignored": 1},
            {"name": "RSI", "params": {"period": 7}, "out_col": "rsi"},
        ]
    )
    assert isinstance(factors[0], EMAFactor) and factors[0].period == 9
    assert isinstance(factors[1], RSIFactor) and factors[1].out_col == "rsi"
    assert "macd" in registry and "supertrend" in registry


def test_registry_rejects_unknown_indicator_and_isolated_instances():
    a = IndicatorRegistry.with_defaults()
    b = IndicatorRegistry()
    a.register("custom_ema", EMAFactor)
    assert "custom_ema" in a
    assert "custom_ema" not in b
    with pytest.raises(ValueError):
        b.build([{"name": "ema", "period": 3}])
    with pytest.raises(ValueError):
        a.build([{"period": 3}])


def test_indicator_engine_snapshot_and_value():
    candles = build_candles([float(x) for x in range(100, 120)])
    engine = IndicatorEngine(
        IndicatorRegistry.with_defaults(),
        [
            {"name": "ema", "period": 3, "out_col": "ema_fast"},
            {"name": "macd", "fast": 3, "slow": 5, "signal": 2, "out_col": "macd"},
        ],
    )
    engine.prime(candles)
    assert engine.columns == ["ema_fast", "macd", "macd_signal", "macd_hist"]

    first = engine.snapshot(0)
    assert first.get("ema_fast") is None
    with pytest.raises(InsufficientDataError):
        first.require("ema_fast")

    snap = engine.snapshot(10)
    assert snap.get("ema_fast") == engine.value(10, "ema_fast")
    assert snap.prev("ema_fast") == engine.value(9, "ema_fast")
    assert snap.require("ema_fast", "macd")["ema_fast"] > 0
    assert engine.value(-1, "ema_fast") is None
    assert engine.value(100, "ema_fast") is None
    with pytest.raises(IndexError):
        engine.snapshot(len(candles))


def test_snapshot_require_without_previous():
    snap = IndicatorSnapshot(current={"atr": 1.5}, previous={"atr": None})
    assert snap.require("atr", with_previous=False) == {"atr": 1.5}
    with pytest.raises(InsufficientDataError):
        snap.require("atr")


def test_indicator_engine_frame_requires_prime():
    engine = IndicatorEngine(IndicatorRegistry.with_defaults(), [{"name": "atr", "period": 3}])
    with pytest.raises(RuntimeError):
        _ = engine.frame
    engine.prime(build_candles([1.0, 2.0, 3.0, 4.0]))
    assert "atr_3" in engine.frame.columns
