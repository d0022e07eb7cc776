"""核心数据结构：Candle/Lot/Position/Signal/ClosedTrade/FillResult/BacktestResult。"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Direction(str, Enum):
    """持仓方向。"""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class SignalType(str, Enum):
    ENTRY = "ENTRY"
    PYRAMID = "PYRAMID"
    EXIT = "EXIT"


class ExitReason(str, Enum):
    """平仓原因（固定分类）。"""
    ATR_DECLINE = "ATR_DECLINE"
    RSI_EXIT = "RSI_EXIT"
    TRAILING_STOP = "TRAILING_STOP"
    TIME_EXIT = "TIME_EXIT"
    EMA_FLIP = "EMA_FLIP"
    OPPOSITE_SIGNAL = "OPPOSITE_SIGNAL"
    END_OF_DATA = "END_OF_DATA"
    MAX_DRAWDOWN = "MAX_DRAWDOWN"


# 同一根 K 线上多个出场条件同时满足时，按此顺序取第一个
EXIT_PRIORITY: tuple[ExitReason, ...] = (
    ExitReason.TRAILING_STOP,
    ExitReason.ATR_DECLINE,
    ExitReason.RSI_EXIT,
    ExitReason.EMA_FLIP,
    ExitReason.OPPOSITE_SIGNAL,
    ExitReason.TIME_EXIT,
    ExitReason.MAX_DRAWDOWN,
    ExitReason.END_OF_DATA,
)


class TrailingState(str, Enum):
    INACTIVE = "INACTIVE"
    ARMED = "ARMED"
    TRIGGERED = "TRIGGERED"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class FillStatus(str, Enum):
    FILLED = "FILLED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class Candle:
    """K 线数据（行情源产出后不可变）。"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    symbol: str
    timeframe: str


@dataclass(frozen=True)
class Lot:
    """一笔持仓单元，带独立的入场价与移动止损状态。"""
    id: str
    direction: Direction
    entry_price: float
    entry_timestamp: datetime
    quantity: float
    highest_price_since_entry: float
    lowest_price_since_entry: float
    trailing_stop_price: float | None = None
    is_trailing_active: bool = False
    trailing_state: TrailingState = TrailingState.INACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.entry_price) * self.quantity * self.direction.sign


@dataclass
class Position:
    """某 symbol 当前所有未平仓 lot（方向一致）。"""
    symbol: str
    lots: list[Lot] = field(default_factory=list)

    @property
    def direction(self) -> Direction | None:
        return self.lots[0].direction if self.lots else None

    @property
    def is_open(self) -> bool:
        return bool(self.lots)

    @property
    def quantity(self) -> float:
        return sum(lot.quantity for lot in self.lots)

    @property
    def avg_entry_price(self) -> float:
        qty = self.quantity
        if qty <= 0:
            return 0.0
        return sum(lot.entry_price * lot.quantity for lot in self.lots) / qty

    def unrealized_pnl(self, price: float) -> float:
        return sum(lot.unrealized_pnl(price) for lot in self.lots)


@dataclass(frozen=True)
class Signal:
    """策略/移动止损产出的瞬时信号；同一根 K 线内被账本消费。"""
    type: SignalType
    direction: Direction
    price: float
    timestamp: datetime
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    quantity: float | None = None
    lot_ids: tuple[str, ...] | None = None  # None = 整个持仓

    @property
    def exit_reason(self) -> ExitReason | None:
        if self.type is not SignalType.EXIT or self.reason is None:
            return None
        try:
            return ExitReason(self.reason)
        except ValueError:
            return None


@dataclass(frozen=True)
class ClosedTrade:
    """lot 被平仓后产生的成交记录。"""
    lot_id: str
    symbol: str
    direction: Direction
    entry_price: float
    exit_price: float
    quantity: float
    entry_timestamp: datetime
    exit_timestamp: datetime
    pnl: float
    pnl_percent: float
    exit_reason: ExitReason

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["direction"] = self.direction.value
        row["exit_reason"] = self.exit_reason.value
        row["entry_timestamp"] = self.entry_timestamp.isoformat()
        row["exit_timestamp"] = self.exit_timestamp.isoformat()
        return row


@dataclass(frozen=True)
class FillResult:
    """下单回执。"""
    status: FillStatus
    side: OrderSide
    quantity: float
    price: float
    order_id: str | None = None
    message: str | None = None

    @property
    def filled(self) -> bool:
        return self.status is FillStatus.FILLED


@dataclass
class BacktestResult:
    """单 symbol 回测结果（产出后只读）。"""
    symbol: str
    timeframe: str
    trades: list[ClosedTrade] = field(default_factory=list)
    equity_curve: list[tuple[datetime, float]] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    warmup_period: int = 0
    candles_processed: int = 0
    candles_skipped: int = 0
    cancelled: bool = False
    halted: bool = False
    errors: list[str] = field(default_factory=list)
    rejected_signals: int = 0

    def to_dict(self) -> dict[str, Any]:
        m = self.metrics
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "total_trades": m.get("total_trades", 0),
            "winning_trades": m.get("winning_trades", 0),
            "losing_trades": m.get("losing_trades", 0),
            "win_rate": m.get("win_rate", 0.0),
            "total_return": m.get("total_return", 0.0),
            "total_return_percentage": m.get("total_return_percentage", 0.0),
            "max_drawdown": m.get("max_drawdown", 0.0),
            "sharpe_ratio": m.get("sharpe_ratio", 0.0),
            "profit_factor": m.get("profit_factor", 0.0),
            "average_win": m.get("average_win", 0.0),
            "average_loss": m.get("average_loss", 0.0),
            "trades": [t.to_dict() for t in self.trades],
            "metrics": dict(m),
            "equity_curve": [(ts.isoformat(), eq) for ts, eq in self.equity_curve],
            "warmup_period": self.warmup_period,
            "candles_processed": self.candles_processed,
            "candles_skipped": self.candles_skipped,
            "cancelled": self.cancelled,
            "halted": self.halted,
            "errors": list(self.errors),
            "rejected_signals": self.rejected_signals,
        }
