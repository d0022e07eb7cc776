"""K 线数据源边界。

回测核心只依赖 `CandleFeed.get_historical_candles`；数据源应返回按时间递增、无重复的 K 线，
核心仍会用 `sanitize_candles` 剔除重复或乱序的 K 线。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Mapping, Sequence

import pandas as pd

from shared.models.models import Candle
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("candle-feed")

DateLike = str | date | datetime | None


class CandleFeed(ABC):
    """历史 K 线数据源。"""

    @abstractmethod
    def get_historical_candles(
        self,
        symbol: str,
        timeframe: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[Candle]:
        """返回 [start, end] 区间内的 K 线；失败抛 FeedError。"""


def _to_utc(value: DateLike) -> pd.Timestamp | None:
    if value is None or value == "":
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize(timezone.utc)
    return ts.tz_convert(timezone.utc)


def _is_date_only(value: DateLike) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and len(value.strip()) == 10


def time_bounds(start: DateLike, end: DateLike) -> tuple[pd.Timestamp | None, pd.Timestamp | None]:
    """把起止时间规整为 UTC；只给日期的 end 包含当天全部 K 线（返回开区间上界）。"""
    lo = _to_utc(start)
    hi = _to_utc(end)
    if hi is not None and _is_date_only(end):
        hi = hi + timedelta(days=1)
    else:
        hi = hi + timedelta(microseconds=1) if hi is not None else None
    return lo, hi


def in_range(ts: datetime, lo: pd.Timestamp | None, hi: pd.Timestamp | None) -> bool:
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize(timezone.utc)
    if lo is not None and stamp < lo:
        return False
    if hi is not None and stamp >= hi:
        return False
    return True


def sanitize_candles(candles: Iterable[Candle], *, symbol: str | None = None) -> tuple[list[Candle], int]:
    """剔除时间戳不严格递增（重复/乱序）的 K 线；返回 (保留的 K 线, 剔除数量)。"""
    kept: list[Candle] = []
    dropped = 0
    last_ts: datetime | None = None
    for c in candles:
        if last_ts is not None and c.timestamp <= last_ts:
            dropped += 1
            _LOGGER.warning(
                "%s dropping non-monotonic candle ts=%s (last=%s)",
                symbol or c.symbol,
                c.timestamp.isoformat(),
                last_ts.isoformat(),
            )
            continue
        kept.append(c)
        last_ts = c.timestamp
    return kept, dropped


class InMemoryCandleFeed(CandleFeed):
    """内存数据源：`{symbol: [Candle, ...]}`，测试与外部预加载数据使用。"""

    def __init__(self, data: Mapping[str, Sequence[Candle]] | None = None):
        self._data: dict[str, list[Candle]] = {k: list(v) for k, v in (data or {}).items()}

    def add(self, symbol: str, candles: Sequence[Candle]) -> None:
        self._data[symbol] = list(candles)

    def get_historical_candles(
        self,
        symbol: str,
        timeframe: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[Candle]:
        lo, hi = time_bounds(start, end)
        return [c for c in self._data.get(symbol, []) if in_range(c.timestamp, lo, hi)]
