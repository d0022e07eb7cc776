"""行情数据模块（market_data）：K 线数据源边界与 CSV 加载。"""

from market_data.feed import CandleFeed, InMemoryCandleFeed, sanitize_candles
from market_data.loader import CsvCandleFeed

__all__ = [
    "CandleFeed",
    "InMemoryCandleFeed",
    "CsvCandleFeed",
    "sanitize_candles",
]
