# modelfarm/contracts/resources.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from modelfarm.utils.datetime_utils import DateTimeUtils

from .enums import ResourceType

MIN_RAM_CAPACITY_BYTES = 1024 * 1024


class ResourceContainer(BaseModel):
    """
    Capacity pool of one resource kind.
    CPU/GPU: integer slots. RAM: bytes (admission still uses one slot).
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    description: Optional[str] = None
    type: ResourceType
    max_capacity: int
    is_default: bool = False
    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    updated_at: Optional[datetime] = None


class ResourceQueue(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    description: Optional[str] = None
    cpu_container_id: uuid.UUID
    gpu_container_id: uuid.UUID
    ram_container_id: Optional[uuid.UUID] = None
    max_concurrent_jobs: int = Field(default=1, ge=1)
    max_job_duration_seconds: Optional[float] = Field(default=None, gt=0)
    max_queue_wait_seconds: Optional[float] = Field(default=None, gt=0)
    is_default: bool = False
    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    updated_at: Optional[datetime] = None


class SlotHolder(BaseModel):
    job_id: uuid.UUID
    since: datetime


class ContainerStatus(BaseModel):
    container: ResourceContainer
    slot_capacity: int
    available: int
    held: List[SlotHolder] = Field(default_factory=list)
    queued: List[SlotHolder] = Field(default_factory=list)


class QueueStatus(BaseModel):
    queue: ResourceQueue
    available_slots: int
    running: List[SlotHolder] = Field(default_factory=list)
    waiting: List[SlotHolder] = Field(default_factory=list)
    cpu: Optional[ContainerStatus] = None
    gpu: Optional[ContainerStatus] = None
    ram: Optional[ContainerStatus] = None


class HardwareInfo(BaseModel):
    cpu_count: int
    gpu_count: int
    gpu_names: List[str] = Field(default_factory=list)
    total_memory_bytes: Optional[int] = None
    available_memory_bytes: Optional[int] = None
