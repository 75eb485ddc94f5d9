# modelfarm/resources/slots.py
"""
SlotPool: counting admission with per-job bookkeeping.

    held   {job_id → acquired_at}
    queued {job_id → queued_at}

Capacity edits apply to the next acquisition; holders are never evicted.
"""
from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

from modelfarm.utils.cancellation import CancellationToken, NONE
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import ResourceUnavailable


class SlotPool:
    def __init__(self, capacity: int, name: str = ""):
        self.name = name
        self._capacity = max(1, int(capacity))
        self._cond = threading.Condition()
        self._held: dict[uuid.UUID, datetime] = {}
        self._queued: dict[uuid.UUID, datetime] = {}

    # ------------------------------------------------------------------
    @property
    def capacity(self) -> int:
        return self._capacity

    @capacity.setter
    def capacity(self, value: int) -> None:
        with self._cond:
            grew = value > self._capacity
            self._capacity = max(1, int(value))
            if grew:
                self._cond.notify_all()

    @property
    def available(self) -> int:
        with self._cond:
            return max(0, self._capacity - len(self._held))

    def held(self) -> dict[uuid.UUID, datetime]:
        with self._cond:
            return dict(self._held)

    def queued(self) -> dict[uuid.UUID, datetime]:
        with self._cond:
            return dict(self._queued)

    def is_holding(self, job_id: uuid.UUID) -> bool:
        with self._cond:
            return job_id in self._held

    # ------------------------------------------------------------------
    def _grab(self, job_id: uuid.UUID) -> bool:
        # caller holds the condition
        if job_id in self._held:
            return True
        if len(self._held) >= self._capacity:
            return False
        self._held[job_id] = DateTimeUtils.utc_now()
        return True

    def try_acquire(self, job_id: uuid.UUID) -> bool:
        with self._cond:
            return self._grab(job_id)

    def acquire(
        self,
        job_id: uuid.UUID,
        token: CancellationToken = NONE,
        timeout: Optional[float] = None,
        poll_interval: float = 0.1,
        can_acquire: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Block until a slot is held.

        - token cancelled → deregister from queued, raise Cancelled
        - timeout elapsed → deregister from queued, raise ResourceUnavailable
        - can_acquire() False (e.g. job paused) → keep waiting
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._queued.setdefault(job_id, DateTimeUtils.utc_now())
            try:
                while True:
                    token.raise_if_cancelled()
                    allowed = can_acquire is None or can_acquire()
                    if allowed and self._grab(job_id):
                        return
                    wait = poll_interval
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise ResourceUnavailable(
                                f"Timed out after {timeout:.1f}s waiting for a slot in {self.name or 'pool'}"
                            )
                        wait = min(wait, remaining)
                    self._cond.wait(wait)
            finally:
                self._queued.pop(job_id, None)

    def release(self, job_id: uuid.UUID) -> bool:
        """
        Frees the slot iff job_id holds one; unknown ids are a no-op.
        """
        with self._cond:
            if self._held.pop(job_id, None) is None:
                return False
            self._cond.notify(1)
            return True
