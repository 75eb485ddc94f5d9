#!filepath: modelfarm/observability/progress.py
from __future__ import annotations

import threading
import time
from typing import Callable, Generic, Optional, TypeVar

from modelfarm.utils.logger import logs

T = TypeVar("T")


class ProgressThrottle(Generic[T]):
    """
    最多每 interval 秒落盘一次进度。

    - 被节流的报告直接丢弃，新报告永远不会被旧报告覆盖
    - force=True（例如最后一个 epoch）无视节流
    """

    def __init__(
        self,
        sink: Callable[[T], None],
        interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.interval = interval
        self.clock = clock
        self._last: Optional[float] = None
        self._lock = threading.Lock()
        self.emitted = 0
        self.dropped = 0

    def report(self, item: T, force: bool = False) -> bool:
        with self._lock:
            now = self.clock()
            if not force and self._last is not None and now - self._last < self.interval:
                self.dropped += 1
                return False
            self._last = now
            self.emitted += 1
            # sink runs under the lock so two reports cannot land out of order
            self.sink(item)
        return True


class ProgressReporter:
    """
    最轻量进度日志（不依赖 Rich/TQDM）
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def start(self, task: str, total: int, unit: str = ""):
        if not self.enabled:
            return
        logs.info(f"[Progress] {task} started total={total} {unit}")

    def done(self, task: str):
        if not self.enabled:
            return
        logs.info(f"[Progress] {task} done")
