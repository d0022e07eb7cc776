"""历史数据加载：从 `{data_dir}/{symbol}_{timeframe}.csv` 读取 K 线。

CSV 列：时间列（`timestamp`/`ts`/`start_ts` 之一，ISO 字符串或秒/毫秒时间戳）、
`open, high, low, close`，可选 `volume`。
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from market_data.feed import CandleFeed, DateLike, time_bounds
from shared.errors import FeedError
from shared.models.models import Candle

TIME_COLUMNS = ("timestamp", "ts", "start_ts")
PRICE_COLUMNS = ("open", "high", "low", "close")


def _parse_ts(series: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(series):
        # 大于 1e12 视为毫秒
        unit = "ms" if float(series.max()) > 1e12 else "s"
        return pd.to_datetime(series, unit=unit, utc=True)
    return pd.to_datetime(series, utc=True)


class CsvCandleFeed(CandleFeed):
    """CSV 文件数据源（pandas 读取）。"""

    def __init__(self, data_dir: str | Path = "dataset/history"):
        self.data_dir = Path(data_dir)

    def path_for(self, symbol: str, timeframe: str) -> Path:
        return self.data_dir / f"{symbol}_{timeframe}.csv"

    def load_frame(self, symbol: str, timeframe: str) -> pd.DataFrame:
        path = self.path_for(symbol, timeframe)
        if not path.exists():
            raise FeedError(f"No data file for {symbol} {timeframe}: {path}")
        try:
            df = pd.read_csv(path)
        except (OSError, ValueError) as exc:
            raise FeedError(f"Failed to read {path}: {exc}") from exc

        time_col = next((c for c in TIME_COLUMNS if c in df.columns), None)
        missing = [c for c in PRICE_COLUMNS if c not in df.columns]
        if time_col is None or missing:
            raise FeedError(f"{path} missing columns: {missing or ['timestamp']}")
        try:
            df["ts"] = _parse_ts(df[time_col])
        except (ValueError, TypeError) as exc:
            raise FeedError(f"{path} has invalid timestamps: {exc}") from exc
        if "volume" not in df.columns:
            df["volume"] = 0.0
        df["volume"] = df["volume"].fillna(0.0)
        return df

    def get_historical_candles(
        self,
        symbol: str,
        timeframe: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[Candle]:
        df = self.load_frame(symbol, timeframe)
        lo, hi = time_bounds(start, end)
        mask = pd.Series(True, index=df.index)
        if lo is not None:
            mask &= df["ts"] >= lo
        if hi is not None:
            mask &= df["ts"] < hi
        df = df.loc[mask]
        return [
            Candle(
                timestamp=row.ts.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
                symbol=symbol,
                timeframe=timeframe,
            )
            for row in df.itertuples(index=False)
        ]
