# modelfarm/market_data/sources.py
"""
Candle sources used by the ingestion handler.

Exchange HTTP clients live outside this package; anything that implements
KlineSource.fetch can be plugged in.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Protocol

import pandas as pd

from modelfarm.contracts.enums import Exchange
from modelfarm.contracts.market import KLINE_COLUMNS, Kline, KlineInterval
from modelfarm.utils.logger import logs

from .kline_store import frame_to_klines


class KlineSource(Protocol):
    def fetch(
        self,
        exchange: Exchange,
        symbol: str,
        interval: KlineInterval,
        start_ms: int,
        end_ms: int,
        limit: int,
    ) -> List[Kline]:
        """
        Up to `limit` candles with start_ms <= open_time <= end_ms,
        ordered by open_time. An empty list means no more data.
        """
        ...


class FrameKlineSource:
    """
    Serves candles out of in-memory DataFrames keyed by (symbol, interval).
    """

    def __init__(self, frames: dict[tuple[str, str], pd.DataFrame] | None = None):
        self._frames: dict[tuple[str, str], pd.DataFrame] = {}
        for (symbol, interval), df in (frames or {}).items():
            self.add(symbol, interval, df)

    def add(self, symbol: str, interval: str | KlineInterval, df: pd.DataFrame) -> None:
        key = (symbol.upper(), KlineInterval.parse(interval).value)
        self._frames[key] = df.sort_values("open_time").reset_index(drop=True)

    def fetch(self, exchange, symbol, interval, start_ms, end_ms, limit) -> List[Kline]:
        df = self._frames.get((symbol.upper(), KlineInterval.parse(interval).value))
        if df is None:
            return []
        window = df[(df["open_time"] >= start_ms) & (df["open_time"] <= end_ms)].head(limit)
        return frame_to_klines(window)


class CsvKlineSource(FrameKlineSource):
    """
    Directory of <SYMBOL>_<interval>.csv files with the kline columns.
    Files are read lazily and cached.
    """

    def __init__(self, directory: str | Path):
        super().__init__()
        self.directory = Path(directory)

    def _load(self, symbol: str, interval: KlineInterval) -> None:
        key = (symbol.upper(), interval.value)
        if key in self._frames:
            return
        path = self.directory / f"{symbol.upper()}_{interval.value}.csv"
        if not path.exists():
            logs.warning(f"[CsvKlineSource] missing file {path}")
            return
        df = pd.read_csv(path)
        missing = set(KLINE_COLUMNS) - set(df.columns)
        if missing:
            raise ValueError(f"{path} is missing columns {sorted(missing)}")
        self.add(symbol, interval, df)

    def fetch(self, exchange, symbol, interval, start_ms, end_ms, limit) -> List[Kline]:
        self._load(symbol, KlineInterval.parse(interval))
        return super().fetch(exchange, symbol, interval, start_ms, end_ms, limit)
