from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from algo.trailing.trailing_stop import (
    NoOpTrailingStopEngine,
    TrailingStopEngine,
    build_trailing_stop_engine,
    process_lots,
    update_lot,
)
from shared.config.schema import TrailingStopConfig
from shared.models.models import Candle, Direction, ExitReason, Lot, SignalType, TrailingState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _lot(direction=Direction.LONG, entry=100.0, lot_id="L1") -> Lot:
    return Lot(
        id=lot_id,
        direction=direction,
        entry_price=entry,
        entry_timestamp=T0,
        quantity=1.0,
        highest_price_since_entry=entry,
        lowest_price_since_entry=entry,
    )


def _bar(i: int, o: float, h: float, l: float, c: float) -> Candle:
    return Candle(T0 + timedelta(hours=i), o, h, l, c, 1.0, "TEST", "1h")


ATR_CFG = TrailingStopConfig(enabled=True, type="ATR", atr_multiplier=2.0, activation_profit=0.01)


def test_disabled_config_returns_lot_unchanged():
    lot = _lot()
    out, sig = update_lot(lot, _bar(1, 100, 120, 90, 115), 1.0, TrailingStopConfig(enabled=False))
    assert out is lot
    assert sig is None


def test_long_lot_arms_after_activation_profit():
    lot = _lot()
    lot, sig = update_lot(lot, _bar(1, 100, 100.6, 99.5, 100.5), 1.0, ATR_CFG)
    assert sig is None
    assert lot.trailing_state is TrailingState.INACTIVE
    assert lot.trailing_stop_price is None
    assert lot.highest_price_since_entry == 100.6

    lot, sig = update_lot(lot, _bar(2, 100.5, 102, 100.4, 101.5), 1.0, ATR_CFG)
    assert sig is None
    assert lot.trailing_state is TrailingState.ARMED
    assert lot.is_trailing_active
    assert lot.trailing_stop_price == pytest.approx(102 - 2.0)


def test_long_stop_only_moves_up_and_triggers_on_low():
    lot = _lot()
    stops = []
    bars = [
        _bar(1, 100, 102.5, 100, 102),
        _bar(2, 102, 104.5, 101.5, 104),
        _bar(3, 104, 104.2, 103, 103.2),
        _bar(4, 103.2, 106, 103, 105.5),
    ]
    for bar in bars:
        lot, sig = update_lot(lot, bar, 1.0, ATR_CFG)
        assert sig is None
        stops.append(lot.trailing_stop_price)
    assert stops == sorted(stops)
    assert stops[-1] == pytest.approx(104.0)

    lot, sig = update_lot(lot, _bar(5, 105, 105.2, 103.9, 104.1), 1.0, ATR_CFG)
    assert sig is not None
    assert sig.type is SignalType.EXIT
    assert sig.exit_reason is ExitReason.TRAILING_STOP
    assert sig.lot_ids == ("L1",)
    assert sig.price == pytest.approx(104.0)
    assert lot.trailing_state is TrailingState.TRIGGERED


def test_gap_through_stop_fills_at_open():
    lot = _lot()
    lot, _ = update_lot(lot, _bar(1, 100, 105, 100, 104.5), 1.0, ATR_CFG)
    assert lot.trailing_stop_price == pytest.approx(103.0)
    lot, sig = update_lot(lot, _bar(2, 101, 101.5, 99, 100), 1.0, ATR_CFG)
    assert sig is not None
    assert sig.price == 101


def test_short_lot_trails_downward():
    lot = _lot(Direction.SHORT)
    lot, _ = update_lot(lot, _bar(1, 100, 100, 97, 98), 1.0, ATR_CFG)
    assert lot.trailing_state is TrailingState.ARMED
    assert lot.trailing_stop_price == pytest.approx(99.0)
    lot, _ = update_lot(lot, _bar(2, 98, 98.5, 95, 96), 1.0, ATR_CFG)
    assert lot.trailing_stop_price == pytest.approx(97.0)
    lot, _ = update_lot(lot, _bar(3, 96, 96.5, 95.5, 96.2), 1.0, ATR_CFG)
    assert lot.trailing_stop_price == pytest.approx(97.0)
    lot, sig = update_lot(lot, _bar(4, 96.2, 97.5, 96, 97.2), 1.0, ATR_CFG)
    assert sig is not None
    assert sig.direction is Direction.SHORT
    assert sig.price == pytest.approx(97.0)


def test_atr_mode_stays_inactive_until_atr_available():
    lot = _lot()
    lot, sig = update_lot(lot, _bar(1, 100, 103, 100, 102.5), None, ATR_CFG)
    assert sig is None
    assert lot.trailing_state is TrailingState.INACTIVE
    lot, _ = update_lot(lot, _bar(2, 102.5, 103, 102, 102.8), float("nan"), ATR_CFG)
    assert lot.trailing_state is TrailingState.INACTIVE
    lot, _ = update_lot(lot, _bar(3, 102.8, 103.2, 102.5, 103), 0.5, ATR_CFG)
    assert lot.trailing_state is TrailingState.ARMED
    assert lot.trailing_stop_price == pytest.approx(103.2 - 1.0)


def test_percentage_mode_with_max_trail_distance():
    cfg = TrailingStopConfig(enabled=True, type="percentage", percentage=0.1, activation_profit=0.01, max_trail_distance=0.02)
    assert cfg.type == "PERCENTAGE"
    lot, _ = update_lot(_lot(), _bar(1, 100, 110, 100, 109), None, cfg)
    assert lot.trailing_stop_price == pytest.approx(110 * (1 - 0.02))


def test_process_lots_is_independent_per_lot():
    lots = [_lot(lot_id="a"), _lot(entry=103.0, lot_id="b")]
    bar = _bar(1, 100, 106, 100, 105)
    updated, exits = process_lots(lots, bar, 1.0, ATR_CFG)
    assert [l.id for l in updated] == ["a", "b"]
    assert updated[0].trailing_state is TrailingState.ARMED
    assert updated[1].trailing_state is TrailingState.ARMED
    assert exits == []

    updated, exits = process_lots(updated, _bar(2, 105, 105, 103.5, 104), 1.0, ATR_CFG)
    assert [s.lot_ids for s in exits] == [("a",), ("b",)]


def test_build_trailing_stop_engine():
    assert isinstance(build_trailing_stop_engine(TrailingStopConfig()), NoOpTrailingStopEngine)
    engine = build_trailing_stop_engine(ATR_CFG)
    assert type(engine) is TrailingStopEngine
    assert engine.enabled
    lots = [_lot()]
    out, exits = NoOpTrailingStopEngine(ATR_CFG).process(lots, _bar(1, 100, 200, 50, 150), 1.0)
    assert out == lots and exits == []


def test_triggered_lot_still_open_is_checked_again():
    lot = _lot()
    lot, _ = update_lot(lot, _bar(1, 100, 105, 100, 104.5), 1.0, ATR_CFG)
    lot, sig = update_lot(lot, _bar(2, 104.5, 104.6, 102.5, 103), 1.0, ATR_CFG)
    assert sig is not None
    assert lot.trailing_state is TrailingState.TRIGGERED

    # 平仓未成交，lot 仍在：没有再次击穿时恢复 ARMED，止损价不回退
    lot, sig = update_lot(lot, _bar(3, 103, 103.8, 103.2, 103.5), 1.0, ATR_CFG)
    assert sig is None
    assert lot.trailing_state is TrailingState.ARMED
    assert lot.trailing_stop_price == pytest.approx(103.0)

    lot, sig = update_lot(lot, _bar(4, 103.5, 103.6, 102.8, 103), 1.0, ATR_CFG)
    assert sig is not None
    assert sig.lot_ids == ("L1",)
    assert sig.price == pytest.approx(103.0)
