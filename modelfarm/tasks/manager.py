# modelfarm/tasks/manager.py
"""
BackgroundTaskManager（FINAL）

In-memory task table is authoritative while the process lives; the
database is brought up to date by a write-behind drainer:

    mutation → mark_dirty(id) → id once in _pending_ids → _persist_queue
    drainer  → up to batch_size ids or batch_wait seconds → one transaction

Progress percent is persisted at 25% steps (and always at 100%);
terminal transitions are always persisted.
"""
from __future__ import annotations

import json
import queue
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel

from modelfarm.config.dispatcher_config import DispatcherConfig
from modelfarm.contracts.enums import BackgroundTaskStatus, BackgroundTaskType
from modelfarm.contracts.tasks import DEFAULT_TASK_PRIORITY, BackgroundTask, TaskProgress
from modelfarm.persistence.tasks import TaskRepository
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import InvalidArgument
from modelfarm.utils.logger import logs

PROGRESS_PERSIST_STEP = 25.0
CANCELLED_MESSAGE = "Task was cancelled"


def _progress_bucket(percent: float) -> int:
    return int(max(0.0, min(100.0, percent)) // PROGRESS_PERSIST_STEP)


class BackgroundTaskManager:
    def __init__(
        self,
        repo: TaskRepository,
        config: DispatcherConfig | None = None,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.repo = repo
        self.config = config or DispatcherConfig()
        self.clock = clock

        self._lock = threading.RLock()
        self._tasks: dict[uuid.UUID, BackgroundTask] = {}
        self._tokens: dict[uuid.UUID, CancellationToken] = {}
        self._persisted_bucket: dict[uuid.UUID, int] = {}

        self._work = threading.Semaphore(0)

        self._persist_queue: "queue.Queue[uuid.UUID]" = queue.Queue()
        self._pending_ids: set[uuid.UUID] = set()
        self._drainer: Optional[threading.Thread] = None
        self._stopping = threading.Event()

        self._loaded = False

    # ==================================================================
    # lifecycle
    # ==================================================================
    def start(self) -> None:
        self._ensure_loaded()
        if self._drainer is None or not self._drainer.is_alive():
            self._stopping.clear()
            self._drainer = threading.Thread(target=self._drain_loop, name="task-persistence", daemon=True)
            self._drainer.start()
            logs.info("[TaskManager] write-behind drainer started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self._drainer is not None:
            self._drainer.join(timeout)
            self._drainer = None
        self.flush()
        logs.info("[TaskManager] stopped")

    def _ensure_loaded(self) -> None:
        """
        Startup reconciliation (runs once):
          - tasks from the reload window + every non-terminal task
          - Running → Pending (started_at cleared)
          - one work signal per pending task
        """
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            since = self.clock() - timedelta(hours=self.config.reload_window_hours)
            loaded = self.repo.load_for_startup(since)
            demoted = 0
            pending = 0
            for task in loaded:
                if task.id in self._tasks:
                    continue
                if task.status is BackgroundTaskStatus.RUNNING:
                    task = task.model_copy(
                        update={"status": BackgroundTaskStatus.PENDING, "started_at": None}
                    )
                    self._mark_dirty(task.id)
                    demoted += 1
                self._tasks[task.id] = task
                self._persisted_bucket[task.id] = _progress_bucket(task.progress_percent)
                if task.status is BackgroundTaskStatus.PENDING:
                    pending += 1
                    self._work.release()
        logs.info(f"[TaskManager] loaded {len(loaded)} task(s); demoted={demoted} pending={pending}")

    # ==================================================================
    # write-behind
    # ==================================================================
    def _mark_dirty(self, task_id: uuid.UUID) -> None:
        with self._lock:
            if task_id in self._pending_ids:
                return
            self._pending_ids.add(task_id)
        self._persist_queue.put(task_id)

    def _collect_batch(self, first_wait: float) -> List[uuid.UUID]:
        try:
            first = self._persist_queue.get(timeout=first_wait)
        except queue.Empty:
            return []
        batch = [first]
        deadline = time.monotonic() + self.config.persist_batch_wait
        while len(batch) < self.config.persist_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._persist_queue.get(timeout=remaining))
            except queue.Empty:
                break
        return batch

    def _persist_batch(self, ids: List[uuid.UUID]) -> None:
        with self._lock:
            # clear first: a mutation after this snapshot re-enqueues the id
            for task_id in ids:
                self._pending_ids.discard(task_id)
            snapshot = [self._tasks[i] for i in ids if i in self._tasks]
        try:
            self.repo.upsert_many(snapshot)
        except Exception as e:
            logs.error(f"[TaskManager] persisting {len(snapshot)} task(s) failed: {e}; retrying")
            for task_id in ids:
                self._mark_dirty(task_id)
            raise

    def _drain_loop(self) -> None:
        while not self._stopping.is_set():
            batch = self._collect_batch(first_wait=0.1)
            if not batch:
                continue
            try:
                self._persist_batch(batch)
            except Exception:
                self._stopping.wait(self.config.persist_retry_delay)

    def flush(self) -> None:
        """
        Persist everything queued right now, on the caller's thread.
        """
        while True:
            ids: List[uuid.UUID] = []
            while True:
                try:
                    ids.append(self._persist_queue.get_nowait())
                except queue.Empty:
                    break
            if not ids:
                return
            self._persist_batch(ids)

    # ==================================================================
    # commands
    # ==================================================================
    def create_task(
        self,
        type_: BackgroundTaskType,
        parameters: dict | BaseModel | str | None = None,
        priority: int = DEFAULT_TASK_PRIORITY,
        related_entity_id: Optional[uuid.UUID] = None,
    ) -> BackgroundTask:
        if isinstance(parameters, BaseModel):
            parameters_json = parameters.model_dump_json()
        elif isinstance(parameters, str):
            parameters_json = parameters
        else:
            parameters_json = json.dumps(parameters or {}, default=str)

        task = BackgroundTask(
            type=BackgroundTaskType(type_),
            parameters_json=parameters_json,
            priority=priority,
            related_entity_id=related_entity_id,
            created_at=self.clock(),
        )
        with self._lock:
            self._tasks[task.id] = task
            self._persisted_bucket[task.id] = 0
        self._mark_dirty(task.id)
        self._work.release()
        logs.info(f"[TaskManager] created task {task.id} type={task.type.name} priority={priority}")
        return task

    def get_task(self, task_id: uuid.UUID) -> Optional[BackgroundTask]:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is not None:
            return task
        return self.repo.get(task_id)

    def list_tasks(
        self,
        type_: Optional[BackgroundTaskType] = None,
        status: Optional[BackgroundTaskStatus] = None,
    ) -> List[BackgroundTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        if type_ is not None:
            tasks = [t for t in tasks if t.type is type_]
        if status is not None:
            tasks = [t for t in tasks if t.status is status]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    def tasks_for_entity(self, entity_id: uuid.UUID) -> List[BackgroundTask]:
        with self._lock:
            return [t for t in self._tasks.values() if t.related_entity_id == entity_id]

    def cancel_task(self, task_id: uuid.UUID) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status.is_terminal:
                return False
            if task.status is BackgroundTaskStatus.PENDING:
                return self._finish(task_id, BackgroundTaskStatus.CANCELLED, error_message=CANCELLED_MESSAGE)
            token = self._tokens.get(task_id)
        if token is not None:
            token.cancel("user")
        logs.info(f"[TaskManager] cancel requested for {task_id}")
        return True

    # ==================================================================
    # processor side
    # ==================================================================
    def wait_for_work(self, timeout: float) -> bool:
        self._ensure_loaded()
        return self._work.acquire(timeout=timeout)

    def signal(self) -> None:
        self._work.release()

    def try_dequeue(self) -> Optional[tuple[BackgroundTask, CancellationToken]]:
        """
        Claim the next Pending task: lowest priority value, then oldest.
        """
        with self._lock:
            pending = [t for t in self._tasks.values() if t.status is BackgroundTaskStatus.PENDING]
            if not pending:
                return None
            task = min(pending, key=lambda t: (t.priority, t.created_at))
            task = task.model_copy(
                update={"status": BackgroundTaskStatus.RUNNING, "started_at": self.clock()}
            )
            self._tasks[task.id] = task
            token = CancellationToken()
            self._tokens[task.id] = token
        self._mark_dirty(task.id)
        return task, token

    def report_progress(self, task_id: uuid.UUID, progress: TaskProgress) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is not BackgroundTaskStatus.RUNNING:
                return
            percent = max(0.0, min(100.0, progress.percent))
            self._tasks[task_id] = task.model_copy(
                update={
                    "progress_percent": percent,
                    "progress_current": progress.current,
                    "progress_total": progress.total,
                    "progress_message": progress.message,
                }
            )
            bucket = _progress_bucket(percent)
            persist = bucket > self._persisted_bucket.get(task_id, 0) or percent >= 100.0
            if persist:
                self._persisted_bucket[task_id] = bucket
        if persist:
            self._mark_dirty(task_id)

    def complete(self, task_id: uuid.UUID, result: dict | str | None = None) -> bool:
        result_json = result if isinstance(result, str) or result is None else json.dumps(result, default=str)
        return self._finish(
            task_id,
            BackgroundTaskStatus.COMPLETED,
            result_json=result_json,
            progress_percent=100.0,
        )

    def fail(self, task_id: uuid.UUID, message: str) -> bool:
        return self._finish(task_id, BackgroundTaskStatus.FAILED, error_message=message)

    def _finish(self, task_id: uuid.UUID, status: BackgroundTaskStatus, **fields) -> bool:
        """
        Terminal status is write-once; a second call is a no-op.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status.is_terminal:
                return False
            self._tasks[task_id] = task.model_copy(
                update={"status": status, "completed_at": self.clock(), **fields}
            )
            self._tokens.pop(task_id, None)
        self._mark_dirty(task_id)
        logs.info(f"[TaskManager] task {task_id} → {status.name}")
        return True

    def running_task_ids(self) -> List[uuid.UUID]:
        with self._lock:
            return [t.id for t in self._tasks.values() if t.status is BackgroundTaskStatus.RUNNING]


def parse_parameters(task: BackgroundTask, model: type[BaseModel]) -> BaseModel:
    try:
        return model.model_validate_json(task.parameters_json)
    except ValueError as e:
        raise InvalidArgument(f"Invalid parameters for task {task.id}: {e}") from e
