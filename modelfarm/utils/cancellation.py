# modelfarm/utils/cancellation.py
from __future__ import annotations

import threading
from typing import Optional

from modelfarm.utils.errors import Cancelled


class CancellationToken:
    """
    Cooperative cancellation handle passed to every suspendable call.

    - cancel(reason) is idempotent; the first reason wins
    - wait(timeout) sleeps but wakes immediately on cancel
    - a child token is cancelled whenever its parent is
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []
        self._timers: list[threading.Timer] = []
        self.reason: str | None = None
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
            reason = self.reason
        if cancelled:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
            timers = list(self._timers)
        for t in timers:
            t.cancel()
        for c in children:
            c.cancel(reason)

    def cancel_after(self, seconds: float, reason: str) -> None:
        timer = threading.Timer(seconds, self.cancel, args=(reason,))
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def dispose(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for t in timers:
            t.cancel()

    def wait(self, timeout: float) -> bool:
        """
        Sleep up to timeout seconds; True if cancelled meanwhile.
        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(reason=self.reason)


class _NeverCancelled(CancellationToken):
    def cancel(self, reason: str | None = None) -> None:
        return None


NONE = _NeverCancelled()
