import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 确保项目根目录在 sys.path，便于测试内直接以顶层包名导入
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from shared.models.models import Candle  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_candles(
    closes,
    *,
    symbol: str = "TEST",
    timeframe: str = "1h",
    start: datetime = T0,
    step: timedelta = timedelta(hours=1),
    spread: float = 1.0,
    gap_open: bool = False,
):
    """按收盘价序列构造 K 线。

    gap_open=False：open=close，high/low = close ± spread；
    gap_open=True：open=上一根 close，high/low = max/min(open, close) ± spread。
    """
    candles = []
    prev = None
    for i, c in enumerate(closes):
        c = float(c)
        o = prev if (gap_open and prev is not None) else c
        candles.append(
            Candle(
                timestamp=start + step * i,
                open=o,
                high=max(o, c) + spread,
                low=min(o, c) - spread,
                close=c,
                volume=1.0,
                symbol=symbol,
                timeframe=timeframe,
            )
        )
        prev = c
    return candles


@pytest.fixture
def make_candles():
    return build_candles


@pytest.fixture
def base_strategy() -> dict:
    """短周期 EMA-Gap-ATR 配置：预热 = max(3, 5, 3, 3, 3) + 10 = 15。"""
    return {
        "strategy": "ema_gap_atr",
        "timeframe": "1h",
        "ema_fast_period": 3,
        "ema_slow_period": 5,
        "atr_period": 3,
        "rsi_period": 3,
        "slope_lookback": 3,
        "atr_multiplier_entry": 0.05,
        "rsi_entry_long": 0,
        "rsi_entry_short": 100,
        "rsi_exit_long": 0,
        "rsi_exit_short": 0,
        "atr_multiplier_unwind": 0,
        "capital": 100000,
        "max_loss_pct": 0.02,
        "position_size": 1.0,
        "max_lots": 1,
        "pyramiding_enabled": False,
        "exit_mode": "FIFO",
        "trailing_stop": {"enabled": False},
    }
