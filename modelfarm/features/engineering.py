# modelfarm/features/engineering.py
"""
Lagged log-return samples（FINAL）

For candles c[0..N) the returns are r[t] = ln(c[t].close / c[t-1].close).
A deque of W = max_lags + forecast_horizon returns slides over the series;
once full, every new return t emits one sample:

    features[k] = r[t - forecast_horizon - k]     k = 0 .. max_lags-1
    target      = r[t]
    timestamp   = c[t - forecast_horizon].open_time

Index 0 is the most recent lag. Exactly max(0, N - W) samples are produced.
"""
from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Sequence

import numpy as np

from modelfarm.contracts.market import Kline
from modelfarm.utils.errors import InsufficientData, InvalidArgument


@dataclass(frozen=True, eq=False)
class TrainingSample:
    features: np.ndarray
    target: float
    timestamp: datetime
    close_price: float

    def with_features(self, features: np.ndarray) -> "TrainingSample":
        return TrainingSample(features, self.target, self.timestamp, self.close_price)


def feature_names(max_lags: int) -> List[str]:
    return [f"LogReturn_Lag{i + 1}" for i in range(max_lags)]


def minimum_candles(max_lags: int, forecast_horizon: int) -> int:
    return max_lags + forecast_horizon + 1


class SampleStream:
    """
    Lazy, single-pass sample sequence. len() is known up front;
    a second iteration yields nothing.
    """

    def __init__(self, klines: Sequence[Kline], max_lags: int, forecast_horizon: int):
        self._klines = klines
        self.max_lags = max_lags
        self.forecast_horizon = forecast_horizon
        self.window = max_lags + forecast_horizon
        self._length = max(0, len(klines) - self.window)
        self._iter = self._generate()

    @property
    def feature_names(self) -> List[str]:
        return feature_names(self.max_lags)

    def __len__(self) -> int:
        return self._length

    def __iter__(self) -> Iterator[TrainingSample]:
        return self

    def __next__(self) -> TrainingSample:
        return next(self._iter)

    def _generate(self) -> Iterator[TrainingSample]:
        klines = self._klines
        fh = self.forecast_horizon
        buffer: deque[float] = deque(maxlen=self.window)

        prev_close = _checked_close(klines[0], 0) if len(klines) else 0.0
        for t in range(1, len(klines)):
            close = _checked_close(klines[t], t)
            buffer.append(math.log(close / prev_close))
            prev_close = close

            if len(buffer) < self.window:
                continue

            # buffer[-1] == r[t]; r[t - fh - k] sits at buffer[-(fh + 1 + k)]
            features = np.fromiter(
                (buffer[-(fh + 1 + k)] for k in range(self.max_lags)),
                dtype=np.float64,
                count=self.max_lags,
            )
            anchor = klines[t - fh]
            yield TrainingSample(
                features=features,
                target=buffer[-1],
                timestamp=anchor.open_time_utc,
                close_price=float(anchor.close),
            )

        # drop the reference so the candle list can be freed
        self._klines = ()


def _checked_close(kline: Kline, index: int) -> float:
    close = float(kline.close)
    if not close > 0:
        raise InvalidArgument(f"Candle {index} has non-positive close price {close}")
    return close


def prepare_training_data(
    klines: Sequence[Kline],
    max_lags: int,
    forecast_horizon: int,
) -> SampleStream:
    """
    Validate then return the lazy sample stream.
    Raises InsufficientData eagerly, before any sample is produced.
    """
    if max_lags < 1:
        raise InvalidArgument(f"max_lags must be >= 1, got {max_lags}")
    if forecast_horizon < 1:
        raise InvalidArgument(f"forecast_horizon must be >= 1, got {forecast_horizon}")

    required = minimum_candles(max_lags, forecast_horizon)
    if len(klines) < required:
        raise InsufficientData(
            f"Insufficient data: need at least {required} candles "
            f"(max_lags={max_lags}, forecast_horizon={forecast_horizon}), got {len(klines)}"
        )

    return SampleStream(klines, max_lags, forecast_horizon)


def to_arrays(samples: Sequence[TrainingSample]) -> tuple[np.ndarray, np.ndarray]:
    """
    (X, y) with X.shape == (n, max_lags).
    """
    if not samples:
        return np.empty((0, 0), dtype=np.float64), np.empty(0, dtype=np.float64)
    X = np.vstack([s.features for s in samples])
    y = np.fromiter((s.target for s in samples), dtype=np.float64, count=len(samples))
    return X, y
