from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from algo.trailing.trailing_stop import process_lots
from broker.abstract_broker import OrderExecutor
from broker.backtest_broker import BacktestExecutor
from broker.ledger import PositionLedger
from engine.signal_pipeline import execute_signals, prepare_signals
from shared.config.schema import TrailingStopConfig
from shared.models.models import (
    Candle,
    Direction,
    ExitReason,
    FillResult,
    FillStatus,
    Signal,
    SignalType,
    TrailingState,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _bar(i: int, o: float, h: float, l: float, c: float) -> Candle:
    return Candle(T0 + timedelta(hours=i), o, h, l, c, 1.0, "TEST", "1h")


def _sig(kind: SignalType, direction: Direction, i: int, price: float, reason=None, **kwargs) -> Signal:
    return Signal(type=kind, direction=direction, price=price, timestamp=T0 + timedelta(hours=i), reason=reason, **kwargs)


def _trailing_exit(lot_id: str, i: int, price: float) -> Signal:
    return _sig(SignalType.EXIT, Direction.LONG, i, price, ExitReason.TRAILING_STOP.value, lot_ids=(lot_id,))


def _two_lot_ledger() -> PositionLedger:
    ledger = PositionLedger("TEST", max_lots=2, pyramiding_enabled=True)
    ledger.apply_signal(_sig(SignalType.ENTRY, Direction.LONG, 0, 100.0), _bar(0, 100, 100, 100, 100))
    ledger.apply_signal(_sig(SignalType.PYRAMID, Direction.LONG, 1, 103.0), _bar(1, 103, 103, 103, 103))
    return ledger


def test_strategy_exit_closes_lots_left_by_trailing_stop():
    ledger = _two_lot_ledger()
    generated = [
        _sig(SignalType.EXIT, Direction.LONG, 2, 102.0, ExitReason.EMA_FLIP.value),
        _sig(SignalType.EXIT, Direction.LONG, 2, 102.0, ExitReason.RSI_EXIT.value),
        _sig(SignalType.PYRAMID, Direction.LONG, 2, 102.0),
    ]
    signals = prepare_signals([_trailing_exit("TEST-1", 2, 102.5)], generated)

    assert [s.reason for s in signals] == [ExitReason.TRAILING_STOP.value, ExitReason.RSI_EXIT.value]
    assert signals[1].lot_ids is None

    closed = execute_signals(signals=signals, ledger=ledger, candle=_bar(2, 103, 103.5, 101.5, 102))
    assert [(t.lot_id, t.exit_reason) for t in closed] == [
        ("TEST-1", ExitReason.TRAILING_STOP),
        ("TEST-2", ExitReason.RSI_EXIT),
    ]
    assert [t.exit_price for t in closed] == [102.5, 102.0]
    assert not ledger.position.is_open
    assert ledger.rejected == []


def test_strategy_exit_after_trailing_closed_everything_is_dropped():
    ledger = PositionLedger("TEST")
    ledger.apply_signal(_sig(SignalType.ENTRY, Direction.LONG, 0, 100.0), _bar(0, 100, 100, 100, 100))
    signals = prepare_signals(
        [_trailing_exit("TEST-1", 1, 99.0)],
        [_sig(SignalType.EXIT, Direction.LONG, 1, 98.0, ExitReason.EMA_FLIP.value)],
    )
    closed = execute_signals(signals=signals, ledger=ledger, candle=_bar(1, 100, 100, 97, 98))

    assert [t.exit_reason for t in closed] == [ExitReason.TRAILING_STOP]
    assert ledger.rejected == []


def test_exit_on_flat_position_without_trailing_is_still_rejected():
    ledger = PositionLedger("TEST")
    signals = prepare_signals([], [_sig(SignalType.EXIT, Direction.LONG, 0, 100.0)])
    assert execute_signals(signals=signals, ledger=ledger, candle=_bar(0, 100, 101, 99, 100)) == []
    assert len(ledger.rejected) == 1


def test_entries_only_pass_on_candles_without_exits():
    entry = _sig(SignalType.ENTRY, Direction.LONG, 0, 100.0)
    pyramid = _sig(SignalType.PYRAMID, Direction.LONG, 0, 100.0)
    trailing = _trailing_exit("TEST-1", 0, 99.0)

    assert prepare_signals([], [entry, pyramid]) == [entry, pyramid]
    assert prepare_signals([trailing], [entry, pyramid]) == [trailing]
    assert prepare_signals([], []) == []


class _RejectFirstExecutor(OrderExecutor):
    def __init__(self):
        self.inner = BacktestExecutor(prefix="t")
        self.calls = 0

    def place_order(self, side, quantity, price):
        self.calls += 1
        if self.calls == 1:
            return FillResult(status=FillStatus.REJECTED, side=side, quantity=quantity, price=price, message="halted")
        return self.inner.place_order(side, quantity, price)


def test_rejected_trailing_exit_fires_again_on_next_breach():
    cfg = TrailingStopConfig(enabled=True, type="ATR", atr_multiplier=2.0, activation_profit=0.01)
    ledger = PositionLedger("TEST")
    ledger.apply_signal(_sig(SignalType.ENTRY, Direction.LONG, 0, 100.0), _bar(0, 100, 100, 100, 100))
    armed = replace(
        ledger.lots[0],
        trailing_state=TrailingState.ARMED,
        is_trailing_active=True,
        trailing_stop_price=104.0,
        highest_price_since_entry=106.0,
    )
    ledger.replace_lots([armed])
    executor = _RejectFirstExecutor()

    bar = _bar(1, 105, 105.2, 103.5, 103.8)
    lots, exits = process_lots(ledger.lots, bar, 1.0, cfg)
    ledger.replace_lots(lots)
    assert execute_signals(signals=prepare_signals(exits, []), ledger=ledger, candle=bar, executor=executor) == []
    assert len(ledger.rejected) == 1
    assert ledger.lots[0].trailing_state is TrailingState.TRIGGERED

    bar = _bar(2, 103.8, 104.0, 103.0, 103.2)
    lots, exits = process_lots(ledger.lots, bar, 1.0, cfg)
    ledger.replace_lots(lots)
    assert [s.lot_ids for s in exits] == [("TEST-1",)]
    closed = execute_signals(signals=prepare_signals(exits, []), ledger=ledger, candle=bar, executor=executor)

    assert [t.exit_reason for t in closed] == [ExitReason.TRAILING_STOP]
    assert closed[0].exit_price == 103.8
    assert not ledger.position.is_open
