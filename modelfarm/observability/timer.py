#!filepath: modelfarm/observability/timer.py
import time
from typing import Callable, Optional


class Timer:
    """
    训练时长计时器
    - offset：断点续训前已累计的秒数
    - pause() / resume()：暂停期间不计时
    - elapsed() → offset + 实际运行秒数
    """

    def __init__(self, offset: float = 0.0, clock: Callable[[], float] = time.perf_counter):
        self.offset = offset
        self.clock = clock
        self._run_seconds = 0.0
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self) -> "Timer":
        if self._started_at is None:
            self._started_at = self.clock()
        return self

    resume = start

    def pause(self) -> None:
        if self._started_at is None:
            return
        self._run_seconds += self.clock() - self._started_at
        self._started_at = None

    def elapsed(self) -> float:
        total = self.offset + self._run_seconds
        if self._started_at is not None:
            total += self.clock() - self._started_at
        return total

    def stop(self) -> float:
        self.pause()
        return self.elapsed()
