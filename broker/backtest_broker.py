"""回测专用执行器：总是按请求价格全部成交，并记录订单流水。"""

from __future__ import annotations

import itertools
import threading

from broker.abstract_broker import OrderExecutor
from shared.models.models import FillResult, FillStatus, OrderSide


class BacktestExecutor(OrderExecutor):
    """离线回测撮合器（无滑点、无手续费）。"""

    def __init__(self, prefix: str = "bt"):
        self.prefix = prefix
        self.orders: list[FillResult] = []
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def place_order(self, side: OrderSide, quantity: float, price: float) -> FillResult:
        if quantity <= 0:
            fill = FillResult(
                status=FillStatus.REJECTED,
                side=side,
                quantity=float(quantity),
                price=float(price),
                message="quantity must be positive",
            )
        else:
            with self._lock:
                order_id = f"{self.prefix}-{next(self._seq)}"
            fill = FillResult(
                status=FillStatus.FILLED,
                side=side,
                quantity=float(quantity),
                price=float(price),
                order_id=order_id,
            )
        self.orders.append(fill)
        return fill
