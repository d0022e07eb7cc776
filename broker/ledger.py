"""持仓与 lot 账本。

一个 symbol 一个账本：把 ENTRY/PYRAMID/EXIT 信号落到 Position 的 lot 列表上，
平仓时按 FIFO/LIFO 顺序为每个 lot 生成 ClosedTrade。

约束：
- `len(lots) <= max_lots`；
- 所有 lot 方向一致；
- 被拒绝的信号不改变任何状态。
"""

from __future__ import annotations

from typing import Iterable, Sequence

from broker.abstract_broker import OrderExecutor, order_side_for
from shared.errors import LedgerError, LotLimitExceeded, PositionConflict
from shared.models.models import (
    Candle,
    ClosedTrade,
    ExitReason,
    Lot,
    Position,
    Signal,
    SignalType,
)
from shared.utils.logging import setup_logger

EXIT_MODES = ("FIFO", "LIFO")


def order_lots_for_exit(lots: Sequence[Lot], mode: str) -> list[Lot]:
    """按出场模式排序：FIFO 最早入场先平，LIFO 最晚入场先平。"""
    key = str(mode).upper()
    if key not in EXIT_MODES:
        raise ValueError(f"Unsupported exit mode: {mode}")
    ordered = sorted(enumerate(lots), key=lambda item: (item[1].entry_timestamp, item[0]))
    result = [lot for _, lot in ordered]
    if key == "LIFO":
        result.reverse()
    return result


class PositionLedger:
    """单 symbol 的持仓账本。

    Parameters
    ----------
    symbol:
        品种代码。
    max_lots:
        同时持有的最大 lot 数（>= 1）。
    exit_mode:
        FIFO/LIFO。
    pyramiding_enabled:
        是否允许加仓；关闭时同向 ENTRY 视为冲突。
    default_quantity:
        信号未给出数量时每个 lot 的数量。
    """

    def __init__(
        self,
        symbol: str,
        max_lots: int = 1,
        exit_mode: str = "FIFO",
        pyramiding_enabled: bool = False,
        default_quantity: float = 1.0,
    ):
        if max_lots < 1:
            raise ValueError("max_lots must be >= 1")
        if str(exit_mode).upper() not in EXIT_MODES:
            raise ValueError(f"Unsupported exit mode: {exit_mode}")
        self.symbol = symbol
        self.max_lots = int(max_lots)
        self.exit_mode = str(exit_mode).upper()
        self.pyramiding_enabled = bool(pyramiding_enabled)
        self.default_quantity = float(default_quantity)
        self.position = Position(symbol=symbol)
        self.closed_trades: list[ClosedTrade] = []
        self.rejected: list[tuple[Signal, str]] = []
        self.realized_pnl = 0.0
        self._lot_seq = 0
        self.logger = setup_logger("ledger")

    @classmethod
    def from_config(cls, symbol: str, config) -> "PositionLedger":
        return cls(
            symbol=symbol,
            max_lots=config.max_lots,
            exit_mode=config.exit_mode,
            pyramiding_enabled=config.pyramiding_enabled,
            default_quantity=config.position_size,
        )

    @property
    def lots(self) -> list[Lot]:
        return list(self.position.lots)

    def replace_lots(self, lots: Iterable[Lot]) -> None:
        """用更新后的 lot（如移动止损推进后）替换同 id 的 lot，保持原顺序。"""
        by_id = {lot.id: lot for lot in lots}
        self.position.lots = [by_id.get(lot.id, lot) for lot in self.position.lots]

    def unrealized_pnl(self, price: float) -> float:
        return self.position.unrealized_pnl(price)

    # ------------------------------------------------------------------
    def apply(
        self,
        signals: Iterable[Signal],
        candle: Candle,
        executor: OrderExecutor | None = None,
    ) -> list[ClosedTrade]:
        """按顺序应用信号；可恢复的账本错误记录到 `rejected` 并继续。"""
        closed: list[ClosedTrade] = []
        for signal in signals:
            try:
                closed.extend(self.apply_signal(signal, candle, executor))
            except LedgerError as exc:
                self.rejected.append((signal, str(exc)))
                self.logger.warning(
                    "%s signal rejected: type=%s dir=%s reason=%s error=%s",
                    self.symbol,
                    signal.type.value,
                    signal.direction.value,
                    signal.reason,
                    exc,
                )
        return closed

    def apply_signal(
        self,
        signal: Signal,
        candle: Candle,
        executor: OrderExecutor | None = None,
    ) -> list[ClosedTrade]:
        """应用单个信号；非法信号抛出 PositionConflict/LotLimitExceeded。"""
        if signal.type is SignalType.EXIT:
            return self._exit(signal, candle, executor)

        pos = self.position
        if signal.type is SignalType.ENTRY:
            if pos.is_open and pos.direction is not signal.direction:
                raise PositionConflict(
                    f"ENTRY {signal.direction.value} conflicts with open {pos.direction.value} position"
                )
            if pos.is_open and not self.pyramiding_enabled:
                raise PositionConflict(f"position already open ({pos.direction.value}) and pyramiding disabled")

        if signal.type is SignalType.PYRAMID or pos.is_open:
            if not pos.is_open:
                raise PositionConflict("PYRAMID without an open position")
            if pos.direction is not signal.direction:
                raise PositionConflict(
                    f"PYRAMID {signal.direction.value} conflicts with open {pos.direction.value} position"
                )
            if len(pos.lots) >= self.max_lots:
                raise LotLimitExceeded(f"max_lots={self.max_lots} reached")

        self._open_lot(signal, candle, executor)
        return []

    # ------------------------------------------------------------------
    def _next_lot_id(self) -> str:
        self._lot_seq += 1
        return f"{self.symbol}-{self._lot_seq}"

    def _open_lot(self, signal: Signal, candle: Candle, executor: OrderExecutor | None) -> Lot | None:
        qty = float(signal.quantity if signal.quantity is not None else self.default_quantity)
        price = float(signal.price)
        if executor is not None:
            fill = executor.place_order(order_side_for(signal.type, signal.direction), qty, price)
            if not fill.filled:
                self.rejected.append((signal, f"order rejected: {fill.message}"))
                self.logger.warning("%s open order rejected: %s", self.symbol, fill.message)
                return None
            price, qty = fill.price, fill.quantity

        ts = signal.timestamp or candle.timestamp
        lot = Lot(
            id=self._next_lot_id(),
            direction=signal.direction,
            entry_price=price,
            entry_timestamp=ts,
            quantity=qty,
            highest_price_since_entry=price,
            lowest_price_since_entry=price,
            metadata=dict(signal.metadata.get("lot_metadata") or {}),
        )
        self.position.lots.append(lot)
        self.logger.debug(
            "%s %s %s lot=%s price=%.4f qty=%.4f lots=%d",
            self.symbol,
            signal.type.value,
            signal.direction.value,
            lot.id,
            price,
            qty,
            len(self.position.lots),
        )
        return lot

    def _exit(self, signal: Signal, candle: Candle, executor: OrderExecutor | None) -> list[ClosedTrade]:
        pos = self.position
        if not pos.is_open:
            raise PositionConflict("EXIT without an open position")
        if pos.direction is not signal.direction:
            raise PositionConflict(
                f"EXIT {signal.direction.value} does not match open {pos.direction.value} position"
            )

        if signal.lot_ids is None:
            targets = list(pos.lots)
        else:
            wanted = set(signal.lot_ids)
            targets = [lot for lot in pos.lots if lot.id in wanted]
            if not targets:
                # 目标 lot 已在本根 K 线更早的信号中平掉
                return []

        reason = signal.exit_reason or ExitReason.OPPOSITE_SIGNAL
        price = float(signal.price)
        if executor is not None:
            qty = sum(lot.quantity for lot in targets)
            fill = executor.place_order(order_side_for(SignalType.EXIT, signal.direction), qty, price)
            if not fill.filled:
                self.rejected.append((signal, f"order rejected: {fill.message}"))
                self.logger.warning("%s exit order rejected: %s", self.symbol, fill.message)
                return []
            price = fill.price

        exit_ts = signal.timestamp or candle.timestamp
        closed: list[ClosedTrade] = []
        for lot in order_lots_for_exit(targets, self.exit_mode):
            pnl = lot.unrealized_pnl(price)
            pnl_pct = (price - lot.entry_price) * lot.direction.sign / lot.entry_price * 100 if lot.entry_price else 0.0
            closed.append(
                ClosedTrade(
                    lot_id=lot.id,
                    symbol=self.symbol,
                    direction=lot.direction,
                    entry_price=lot.entry_price,
                    exit_price=price,
                    quantity=lot.quantity,
                    entry_timestamp=lot.entry_timestamp,
                    exit_timestamp=exit_ts,
                    pnl=pnl,
                    pnl_percent=pnl_pct,
                    exit_reason=reason,
                )
            )
            self.realized_pnl += pnl

        closed_ids = {t.lot_id for t in closed}
        pos.lots = [lot for lot in pos.lots if lot.id not in closed_ids]
        self.closed_trades.extend(closed)
        self.logger.debug(
            "%s EXIT %s reason=%s price=%.4f closed=%d remaining=%d",
            self.symbol,
            signal.direction.value,
            reason.value,
            price,
            len(closed),
            len(pos.lots),
        )
        return closed

    def close_all(self, price: float, timestamp, reason: ExitReason, candle: Candle,
                  executor: OrderExecutor | None = None) -> list[ClosedTrade]:
        """强制平掉全部 lot（数据结束/回撤熔断）。空仓时返回空列表。"""
        if not self.position.is_open:
            return []
        signal = Signal(
            type=SignalType.EXIT,
            direction=self.position.direction,  # type: ignore[arg-type]
            price=price,
            timestamp=timestamp,
            reason=reason.value,
        )
        return self.apply([signal], candle, executor)

