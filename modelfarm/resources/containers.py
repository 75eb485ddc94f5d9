# modelfarm/resources/containers.py
from __future__ import annotations

import threading
import uuid
from typing import List, Optional

from modelfarm.contracts.enums import ResourceType
from modelfarm.contracts.resources import (
    MIN_RAM_CAPACITY_BYTES,
    ContainerStatus,
    HardwareInfo,
    ResourceContainer,
    SlotHolder,
)
from modelfarm.persistence.documents import DocumentRepository
from modelfarm.utils.cancellation import CancellationToken, NONE
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import Conflict, InvalidArgument, NotFound
from modelfarm.utils.logger import logs

from .slots import SlotPool


def slot_capacity(container: ResourceContainer) -> int:
    """
    RAM is byte-denominated; admission on it is a single slot.
    """
    if container.type is ResourceType.RAM:
        return 1
    return container.max_capacity


def validate_capacity(type_: ResourceType, capacity: int) -> None:
    if type_ is ResourceType.RAM:
        if capacity < MIN_RAM_CAPACITY_BYTES:
            raise InvalidArgument(f"RAM capacity must be at least {MIN_RAM_CAPACITY_BYTES} bytes")
    elif capacity < 1:
        raise InvalidArgument(f"{type_.name} capacity must be at least 1 slot")


class ResourceContainerService:
    def __init__(self, repo: DocumentRepository[ResourceContainer], queue_repo: DocumentRepository | None = None):
        self.repo = repo
        self.queue_repo = queue_repo
        self._pools: dict[uuid.UUID, SlotPool] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # pools
    # ------------------------------------------------------------------
    def _pool(self, container_id: uuid.UUID) -> SlotPool:
        with self._lock:
            pool = self._pools.get(container_id)
            if pool is None:
                container = self.get(container_id)
                pool = SlotPool(slot_capacity(container), name=f"container:{container.name}")
                self._pools[container_id] = pool
            return pool

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def get(self, container_id: uuid.UUID) -> ResourceContainer:
        container = self.repo.get(container_id)
        if container is None:
            raise NotFound(f"Resource container {container_id} not found")
        return container

    def find(self, container_id: uuid.UUID) -> Optional[ResourceContainer]:
        return self.repo.get(container_id)

    def list(self, type_: Optional[ResourceType] = None) -> List[ResourceContainer]:
        items = self.repo.list()
        if type_ is not None:
            items = [c for c in items if c.type is type_]
        return items

    def get_default(self, type_: ResourceType) -> Optional[ResourceContainer]:
        for c in self.list(type_):
            if c.is_default:
                return c
        return None

    def create(
        self,
        name: str,
        type_: ResourceType,
        max_capacity: int,
        description: Optional[str] = None,
        is_default: bool = False,
    ) -> ResourceContainer:
        if not name or not name.strip():
            raise InvalidArgument("Container name is required")
        type_ = ResourceType(type_)
        validate_capacity(type_, max_capacity)

        with self._lock:
            if is_default:
                self._unset_default(type_)
            container = ResourceContainer(
                name=name.strip(),
                description=description,
                type=type_,
                max_capacity=int(max_capacity),
                is_default=is_default,
            )
            self.repo.upsert(container)
        logs.info(f"[ResourceContainer] created {container.name} type={type_.name} capacity={max_capacity}")
        return container

    def update(
        self,
        container_id: uuid.UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        max_capacity: Optional[int] = None,
    ) -> ResourceContainer:
        with self._lock:
            container = self.get(container_id)
            changes: dict = {"updated_at": DateTimeUtils.utc_now()}
            if name is not None:
                if not name.strip():
                    raise InvalidArgument("Container name is required")
                changes["name"] = name.strip()
            if description is not None:
                changes["description"] = description
            if max_capacity is not None:
                validate_capacity(container.type, max_capacity)
                changes["max_capacity"] = int(max_capacity)
            container = container.model_copy(update=changes)
            self.repo.upsert(container)

            pool = self._pools.get(container_id)
            if pool is not None:
                pool.capacity = slot_capacity(container)
        return container

    def delete(self, container_id: uuid.UUID) -> bool:
        with self._lock:
            container = self.get(container_id)
            if container.is_default:
                raise Conflict(f"Container {container.name} is the default {container.type.name} container")
            pool = self._pools.get(container_id)
            if pool is not None and pool.held():
                raise Conflict(f"Container {container.name} has slots in use")
            if self.queue_repo is not None:
                refs = [
                    q.name
                    for q in self.queue_repo.list()
                    if container_id in (q.cpu_container_id, q.gpu_container_id, q.ram_container_id)
                ]
                if refs:
                    raise Conflict(f"Container {container.name} is used by queue(s) {refs}")
            self._pools.pop(container_id, None)
            deleted = self.repo.delete(container_id)
        logs.info(f"[ResourceContainer] deleted {container.name}")
        return deleted

    def _unset_default(self, type_: ResourceType) -> None:
        for c in self.list(type_):
            if c.is_default:
                self.repo.upsert(c.model_copy(update={"is_default": False, "updated_at": DateTimeUtils.utc_now()}))

    def set_default(self, container_id: uuid.UUID) -> ResourceContainer:
        with self._lock:
            container = self.get(container_id)
            self._unset_default(container.type)
            container = container.model_copy(update={"is_default": True, "updated_at": DateTimeUtils.utc_now()})
            self.repo.upsert(container)
        return container

    def ensure_defaults(self, hardware: HardwareInfo) -> dict[ResourceType, ResourceContainer]:
        """
        Idempotent: one default CPU and one default GPU container, plus a
        RAM container when total memory is known.
        """
        out: dict[ResourceType, ResourceContainer] = {}
        with self._lock:
            wanted = {
                ResourceType.CPU: max(2, hardware.cpu_count // 2),
                ResourceType.GPU: max(1, hardware.gpu_count),
            }
            if hardware.total_memory_bytes:
                wanted[ResourceType.RAM] = max(MIN_RAM_CAPACITY_BYTES, hardware.total_memory_bytes)

            for type_, capacity in wanted.items():
                existing = self.get_default(type_)
                if existing is None:
                    existing = self.create(
                        name=f"Default {type_.name}",
                        type_=type_,
                        max_capacity=capacity,
                        description="Created from detected hardware",
                        is_default=True,
                    )
                out[type_] = existing
        return out

    # ------------------------------------------------------------------
    # admission
    # ------------------------------------------------------------------
    def try_acquire(self, container_id: uuid.UUID, job_id: uuid.UUID) -> bool:
        return self._pool(container_id).try_acquire(job_id)

    def acquire(
        self,
        container_id: uuid.UUID,
        job_id: uuid.UUID,
        token: CancellationToken = NONE,
        timeout: Optional[float] = None,
    ) -> None:
        self._pool(container_id).acquire(job_id, token=token, timeout=timeout)

    def release(self, container_id: uuid.UUID, job_id: uuid.UUID) -> bool:
        with self._lock:
            pool = self._pools.get(container_id)
        if pool is None:
            return False
        return pool.release(job_id)

    def status(self, container_id: uuid.UUID) -> ContainerStatus:
        container = self.get(container_id)
        pool = self._pool(container_id)
        return ContainerStatus(
            container=container,
            slot_capacity=pool.capacity,
            available=pool.available,
            held=[SlotHolder(job_id=j, since=t) for j, t in pool.held().items()],
            queued=[SlotHolder(job_id=j, since=t) for j, t in pool.queued().items()],
        )
