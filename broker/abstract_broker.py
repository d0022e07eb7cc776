"""下单执行边界：核心只依赖 `place_order` 这一接口，回测与实盘实现可互换。"""

from __future__ import annotations

from abc import ABC, abstractmethod

from shared.models.models import Direction, FillResult, OrderSide, SignalType


class OrderExecutor(ABC):
    """订单执行抽象层。"""

    @abstractmethod
    def place_order(self, side: OrderSide, quantity: float, price: float) -> FillResult:
        """按给定方向/数量/价格下单，返回成交回执（FILLED 或 REJECTED）。"""


def order_side_for(signal_type: SignalType, direction: Direction) -> OrderSide:
    """开仓多头/平仓空头 -> BUY；开仓空头/平仓多头 -> SELL。"""
    opening = signal_type in (SignalType.ENTRY, SignalType.PYRAMID)
    if direction is Direction.LONG:
        return OrderSide.BUY if opening else OrderSide.SELL
    return OrderSide.SELL if opening else OrderSide.BUY
