# modelfarm/contracts/market.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from modelfarm.utils.datetime_utils import DateTimeUtils

_MINUTE_MS = 60_000
_YEAR_MS = int(365.25 * 24 * 60 * _MINUTE_MS)


class KlineInterval(str, Enum):
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def milliseconds(self) -> int:
        return _INTERVAL_MS[self]

    @property
    def periods_per_year(self) -> float:
        """
        Annualisation factor A (periods per 365.25-day year).
        """
        return _YEAR_MS / self.milliseconds

    @classmethod
    def parse(cls, value: "str | KlineInterval") -> "KlineInterval":
        if isinstance(value, KlineInterval):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unsupported interval {value!r}; expected one of {[i.value for i in cls]}"
            ) from None


_INTERVAL_MS = {
    KlineInterval.M1: _MINUTE_MS,
    KlineInterval.M5: 5 * _MINUTE_MS,
    KlineInterval.M15: 15 * _MINUTE_MS,
    KlineInterval.H1: 60 * _MINUTE_MS,
    KlineInterval.H4: 240 * _MINUTE_MS,
    KlineInterval.D1: 1440 * _MINUTE_MS,
}


@dataclass(frozen=True)
class Kline:
    """
    One OHLCV candle. Times are epoch milliseconds (UTC).
    """

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_asset_volume: float = 0.0
    number_of_trades: int = 0

    @property
    def open_time_utc(self) -> datetime:
        return DateTimeUtils.from_ms(self.open_time)

    @property
    def close_time_utc(self) -> datetime:
        return DateTimeUtils.from_ms(self.close_time)


KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
]
