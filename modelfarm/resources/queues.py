# modelfarm/resources/queues.py
"""
ResourceQueue: admission unit for training jobs.

Job admission uses only the queue's own max_concurrent_jobs pool; the
referenced containers are surfaced for capacity display.
"""
from __future__ import annotations

import threading
import uuid
from typing import Callable, List, Optional

from modelfarm.contracts.enums import ResourceType
from modelfarm.contracts.resources import QueueStatus, ResourceQueue, SlotHolder
from modelfarm.persistence.documents import DocumentRepository
from modelfarm.utils.cancellation import CancellationToken, NONE
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import Conflict, InvalidArgument, NotFound
from modelfarm.utils.logger import logs

from .containers import ResourceContainerService
from .slots import SlotPool

_UNSET = object()


class ResourceQueueService:
    def __init__(
        self,
        repo: DocumentRepository[ResourceQueue],
        containers: ResourceContainerService,
        poll_interval: float = 0.1,
    ):
        self.repo = repo
        self.containers = containers
        self.poll_interval = poll_interval
        self._pools: dict[uuid.UUID, SlotPool] = {}
        self._lock = threading.RLock()

    def _pool(self, queue_id: uuid.UUID) -> SlotPool:
        with self._lock:
            pool = self._pools.get(queue_id)
            if pool is None:
                queue = self.get(queue_id)
                pool = SlotPool(queue.max_concurrent_jobs, name=f"queue:{queue.name}")
                self._pools[queue_id] = pool
            return pool

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def _check_container(self, container_id: Optional[uuid.UUID], expected: ResourceType, label: str) -> None:
        if container_id is None:
            raise InvalidArgument(f"{label} container is required")
        container = self.containers.find(container_id)
        if container is None:
            raise InvalidArgument(f"{label} container {container_id} does not exist")
        if container.type is not expected:
            raise InvalidArgument(
                f"{label} container {container.name} is {container.type.name}, expected {expected.name}"
            )

    @staticmethod
    def _check_limits(max_concurrent_jobs, max_job_duration_seconds, max_queue_wait_seconds) -> None:
        if max_concurrent_jobs is not None and max_concurrent_jobs < 1:
            raise InvalidArgument("max_concurrent_jobs must be >= 1")
        for label, value in (
            ("max_job_duration_seconds", max_job_duration_seconds),
            ("max_queue_wait_seconds", max_queue_wait_seconds),
        ):
            if value is not None and value <= 0:
                raise InvalidArgument(f"{label} must be > 0")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def get(self, queue_id: uuid.UUID) -> ResourceQueue:
        queue = self.repo.get(queue_id)
        if queue is None:
            raise NotFound(f"Resource queue {queue_id} not found")
        return queue

    def list(self) -> List[ResourceQueue]:
        return self.repo.list()

    def get_default(self) -> Optional[ResourceQueue]:
        for q in self.list():
            if q.is_default:
                return q
        return None

    def create(
        self,
        name: str,
        cpu_container_id: uuid.UUID,
        gpu_container_id: uuid.UUID,
        ram_container_id: Optional[uuid.UUID] = None,
        max_concurrent_jobs: int = 1,
        max_job_duration_seconds: Optional[float] = None,
        max_queue_wait_seconds: Optional[float] = None,
        description: Optional[str] = None,
        is_default: bool = False,
    ) -> ResourceQueue:
        if not name or not name.strip():
            raise InvalidArgument("Queue name is required")
        self._check_container(cpu_container_id, ResourceType.CPU, "CPU")
        self._check_container(gpu_container_id, ResourceType.GPU, "GPU")
        if ram_container_id is not None:
            self._check_container(ram_container_id, ResourceType.RAM, "RAM")
        self._check_limits(max_concurrent_jobs, max_job_duration_seconds, max_queue_wait_seconds)

        with self._lock:
            if is_default:
                self._unset_default()
            queue = ResourceQueue(
                name=name.strip(),
                description=description,
                cpu_container_id=cpu_container_id,
                gpu_container_id=gpu_container_id,
                ram_container_id=ram_container_id,
                max_concurrent_jobs=max_concurrent_jobs,
                max_job_duration_seconds=max_job_duration_seconds,
                max_queue_wait_seconds=max_queue_wait_seconds,
                is_default=is_default,
            )
            self.repo.upsert(queue)
        logs.info(f"[ResourceQueue] created {queue.name} max_concurrent={max_concurrent_jobs}")
        return queue

    def update(
        self,
        queue_id: uuid.UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        cpu_container_id: Optional[uuid.UUID] = None,
        gpu_container_id: Optional[uuid.UUID] = None,
        ram_container_id=_UNSET,
        max_concurrent_jobs: Optional[int] = None,
        max_job_duration_seconds=_UNSET,
        max_queue_wait_seconds=_UNSET,
    ) -> ResourceQueue:
        with self._lock:
            queue = self.get(queue_id)
            changes: dict = {"updated_at": DateTimeUtils.utc_now()}
            if name is not None:
                if not name.strip():
                    raise InvalidArgument("Queue name is required")
                changes["name"] = name.strip()
            if description is not None:
                changes["description"] = description
            if cpu_container_id is not None:
                self._check_container(cpu_container_id, ResourceType.CPU, "CPU")
                changes["cpu_container_id"] = cpu_container_id
            if gpu_container_id is not None:
                self._check_container(gpu_container_id, ResourceType.GPU, "GPU")
                changes["gpu_container_id"] = gpu_container_id
            if ram_container_id is not _UNSET:
                if ram_container_id is not None:
                    self._check_container(ram_container_id, ResourceType.RAM, "RAM")
                changes["ram_container_id"] = ram_container_id
            if max_job_duration_seconds is not _UNSET:
                self._check_limits(None, max_job_duration_seconds, None)
                changes["max_job_duration_seconds"] = max_job_duration_seconds
            if max_queue_wait_seconds is not _UNSET:
                self._check_limits(None, None, max_queue_wait_seconds)
                changes["max_queue_wait_seconds"] = max_queue_wait_seconds
            if max_concurrent_jobs is not None:
                self._check_limits(max_concurrent_jobs, None, None)
                changes["max_concurrent_jobs"] = max_concurrent_jobs

            queue = queue.model_copy(update=changes)
            self.repo.upsert(queue)

            pool = self._pools.get(queue_id)
            if pool is not None:
                pool.capacity = queue.max_concurrent_jobs
        return queue

    def delete(self, queue_id: uuid.UUID) -> bool:
        with self._lock:
            queue = self.get(queue_id)
            if queue.is_default:
                raise Conflict(f"Queue {queue.name} is the default queue")
            pool = self._pools.get(queue_id)
            if pool is not None and pool.held():
                raise Conflict(f"Queue {queue.name} has running jobs")
            self._pools.pop(queue_id, None)
            deleted = self.repo.delete(queue_id)
        logs.info(f"[ResourceQueue] deleted {queue.name}")
        return deleted

    def _unset_default(self) -> None:
        for q in self.list():
            if q.is_default:
                self.repo.upsert(q.model_copy(update={"is_default": False, "updated_at": DateTimeUtils.utc_now()}))

    def set_default(self, queue_id: uuid.UUID) -> ResourceQueue:
        with self._lock:
            queue = self.get(queue_id)
            self._unset_default()
            queue = queue.model_copy(update={"is_default": True, "updated_at": DateTimeUtils.utc_now()})
            self.repo.upsert(queue)
        return queue

    def ensure_default(self, hardware) -> ResourceQueue:
        """
        Idempotent. Must run before any job is admitted.
        """
        with self._lock:
            existing = self.get_default()
            if existing is not None:
                return existing
            defaults = self.containers.ensure_defaults(hardware)
            ram = defaults.get(ResourceType.RAM)
            return self.create(
                name="Default",
                cpu_container_id=defaults[ResourceType.CPU].id,
                gpu_container_id=defaults[ResourceType.GPU].id,
                ram_container_id=ram.id if ram is not None else None,
                max_concurrent_jobs=1,
                description="Created at startup",
                is_default=True,
            )

    # ------------------------------------------------------------------
    # admission
    # ------------------------------------------------------------------
    def try_acquire(self, queue_id: uuid.UUID, job_id: uuid.UUID) -> bool:
        return self._pool(queue_id).try_acquire(job_id)

    def acquire(
        self,
        queue_id: uuid.UUID,
        job_id: uuid.UUID,
        token: CancellationToken = NONE,
        timeout: Optional[float] = None,
        can_acquire: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        timeout defaults to the queue's max_queue_wait_seconds.
        """
        queue = self.get(queue_id)
        if timeout is None:
            timeout = queue.max_queue_wait_seconds
        self._pool(queue_id).acquire(
            job_id,
            token=token,
            timeout=timeout,
            poll_interval=self.poll_interval,
            can_acquire=can_acquire,
        )
        logs.info(f"[ResourceQueue] job={job_id} admitted to {queue.name}")

    def release(self, queue_id: uuid.UUID, job_id: uuid.UUID) -> bool:
        with self._lock:
            pool = self._pools.get(queue_id)
        if pool is None:
            return False
        released = pool.release(job_id)
        if released:
            logs.info(f"[ResourceQueue] job={job_id} released slot")
        return released

    def status(self, queue_id: uuid.UUID) -> QueueStatus:
        queue = self.get(queue_id)
        pool = self._pool(queue_id)

        def _container(cid):
            if cid is None or self.containers.find(cid) is None:
                return None
            return self.containers.status(cid)

        return QueueStatus(
            queue=queue,
            available_slots=pool.available,
            running=[SlotHolder(job_id=j, since=t) for j, t in pool.held().items()],
            waiting=[SlotHolder(job_id=j, since=t) for j, t in pool.queued().items()],
            cpu=_container(queue.cpu_container_id),
            gpu=_container(queue.gpu_container_id),
            ram=_container(queue.ram_container_id),
        )
