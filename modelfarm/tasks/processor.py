# modelfarm/tasks/processor.py
"""
TaskProcessor（FINAL）

One dispatcher thread waits on the manager's work semaphore and admits
Pending tasks up to max_concurrency. Every admitted task runs on its own
thread so a blocking handler cannot stall admission.

Shutdown cancels in-flight handlers with reason "shutdown"; such tasks
are left Running in the store and come back as Pending on next start.
"""
from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional

from modelfarm.contracts.tasks import BackgroundTask, TaskProgress
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.errors import Cancelled
from modelfarm.utils.logger import logs

from .handlers.base import HandlerRegistry
from .manager import CANCELLED_MESSAGE, BackgroundTaskManager

SHUTDOWN_REASON = "shutdown"


class TaskProcessor:
    def __init__(
        self,
        manager: BackgroundTaskManager,
        registry: HandlerRegistry,
        max_concurrency: Optional[int] = None,
        idle_wait: float = 0.5,
    ):
        self.manager = manager
        self.registry = registry
        self.max_concurrency = max(1, max_concurrency or manager.config.max_concurrency)
        self.idle_wait = idle_wait

        self._lock = threading.Lock()
        self._workers: Dict[uuid.UUID, tuple[threading.Thread, CancellationToken]] = {}
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="task-processor", daemon=True)
        self._thread.start()
        logs.info(f"[TaskProcessor] started max_concurrency={self.max_concurrency}")

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping.set()
        self.manager.signal()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        with self._lock:
            workers = list(self._workers.values())
        for _, token in workers:
            token.cancel(SHUTDOWN_REASON)
        for thread, _ in workers:
            thread.join(timeout)
        logs.info(f"[TaskProcessor] stopped ({len(workers)} in-flight task(s) interrupted)")

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._workers)

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    def _loop(self) -> None:
        while not self._stopping.is_set():
            self.manager.wait_for_work(self.idle_wait)
            if self._stopping.is_set():
                break
            self._admit()

    def _admit(self) -> None:
        while self.running_count < self.max_concurrency:
            claimed = self.manager.try_dequeue()
            if claimed is None:
                return
            task, token = claimed
            thread = threading.Thread(
                target=self._run_task,
                args=(task, token),
                name=f"task-{task.id.hex[:8]}",
                daemon=True,
            )
            with self._lock:
                self._workers[task.id] = (thread, token)
            thread.start()

    def _run_task(self, task: BackgroundTask, token: CancellationToken) -> None:
        logs.info(f"[TaskProcessor] running task {task.id} type={task.type.name}")
        try:
            handler = self.registry.get(task.type)
            if handler is None:
                self.manager.fail(task.id, f"No handler registered for task type {task.type.name}")
                return

            def report(progress: TaskProgress) -> None:
                self.manager.report_progress(task.id, progress)

            try:
                result = handler.execute(task, report, token)
            except Cancelled:
                if token.reason == SHUTDOWN_REASON:
                    logs.info(f"[TaskProcessor] task {task.id} interrupted by shutdown")
                    return
                self.manager.fail(task.id, CANCELLED_MESSAGE)
                return
            except Exception as e:
                logs.exception(f"[TaskProcessor] task {task.id} failed: {e}")
                self.manager.fail(task.id, str(e) or type(e).__name__)
                return

            if token.cancelled and token.reason != SHUTDOWN_REASON:
                self.manager.fail(task.id, CANCELLED_MESSAGE)
            else:
                self.manager.complete(task.id, result)
        finally:
            with self._lock:
                self._workers.pop(task.id, None)
            # a slot just freed up
            self.manager.signal()
