# tests/conftest.py
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import numpy as np
import pytest
from loguru import logger

from modelfarm.contracts.market import Kline, KlineInterval
from modelfarm.persistence.database import Database
from modelfarm.persistence.repositories import Repositories
from modelfarm.utils.datetime_utils import DateTimeUtils

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)  # or sys.stderr
    yield


def make_klines(
    closes: List[float],
    start: datetime = T0,
    interval: KlineInterval = KlineInterval.H1,
) -> List[Kline]:
    """
    One candle per close; open = previous close.
    """
    step = interval.milliseconds
    t0 = DateTimeUtils.to_ms(start)
    out = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_time = t0 + i * step
        out.append(
            Kline(
                open_time=open_time,
                open=prev,
                high=max(prev, close),
                low=min(prev, close),
                close=close,
                volume=1.0,
                close_time=open_time + step - 1,
            )
        )
        prev = close
    return out


def random_walk(n: int, seed: int = 0, start: float = 100.0) -> List[float]:
    rng = np.random.default_rng(seed)
    steps = rng.normal(0.0, 0.01, size=n)
    return list(start * np.exp(np.cumsum(steps)))


def sine_closes(n: int, period: float = 12.0) -> List[float]:
    """
    Smooth, learnable series (log returns follow a sine).
    """
    out = [100.0]
    for i in range(1, n):
        out.append(out[-1] * math.exp(0.01 * math.sin(2 * math.pi * i / period)))
    return out


@pytest.fixture
def kline_factory() -> Callable[..., List[Kline]]:
    return make_klines


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "modelfarm.db")
    yield database
    database.close()


@pytest.fixture
def repos(db) -> Repositories:
    return Repositories.open(db)


class ManualClock:
    """
    Injectable UTC clock for time-dependent code.
    """

    def __init__(self, now: datetime = T0 + timedelta(days=30)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    """
    Poll predicate until it is true or timeout elapses.
    """
    import time

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
