"""信号合并管线（Trailing Stop + Strategy → Ledger）。

同一根 K 线上：
- 移动止损触发的 EXIT 先执行，被止损的 lot 以 TRAILING_STOP 平仓；
- 策略 EXIT 只保留优先级最高的一个，作为整仓平仓（lot_ids=None）排在移动止损之后，
  平掉剩余的 lot；
- 有任何 EXIT 时同根 K 线不再开仓/加仓，没有 EXIT 时才放行 ENTRY/PYRAMID。
"""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from broker.abstract_broker import OrderExecutor
from broker.ledger import PositionLedger
from shared.models.models import EXIT_PRIORITY, Candle, ClosedTrade, Signal, SignalType


def _exit_rank(signal: Signal) -> int:
    reason = signal.exit_reason
    if reason is None:
        return len(EXIT_PRIORITY)
    return EXIT_PRIORITY.index(reason)


def prepare_signals(trailing_exits: Sequence[Signal], generated: Sequence[Signal]) -> list[Signal]:
    """合并移动止损与策略信号，返回本根 K 线要交给账本的信号（按执行顺序）。"""
    merged = list(trailing_exits)
    exits = [s for s in generated if s.type is SignalType.EXIT]
    if exits:
        merged.append(replace(min(exits, key=_exit_rank), lot_ids=None))
        return merged
    if merged:
        return merged
    return [s for s in generated if s.type in (SignalType.ENTRY, SignalType.PYRAMID)]


def execute_signals(
    *,
    signals: Sequence[Signal],
    ledger: PositionLedger,
    candle: Candle,
    executor: OrderExecutor | None = None,
) -> list[ClosedTrade]:
    """按顺序把信号交给账本执行，返回本次产生的平仓记录。

    前面的 EXIT 已经把仓位平完时，后面的整仓 EXIT 直接丢弃，不计入拒单。
    """
    closed: list[ClosedTrade] = []
    exited = False
    for signal in signals:
        is_exit = signal.type is SignalType.EXIT
        if is_exit and exited and signal.lot_ids is None and not ledger.position.is_open:
            continue
        closed.extend(ledger.apply([signal], candle, executor))
        exited = exited or is_exit
    return closed
