# modelfarm/contracts/tasks.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from modelfarm.utils.datetime_utils import DateTimeUtils

from .enums import BackgroundTaskStatus, BackgroundTaskType

DEFAULT_TASK_PRIORITY = 100


class BackgroundTask(BaseModel):
    """
    Durable unit of work. parameters_json / result_json are opaque to the
    dispatcher; handlers own their schema.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    type: BackgroundTaskType
    parameters_json: str = "{}"
    status: BackgroundTaskStatus = BackgroundTaskStatus.PENDING
    priority: int = DEFAULT_TASK_PRIORITY

    progress_percent: float = 0.0
    progress_current: int = 0
    progress_total: int = 0
    progress_message: Optional[str] = None

    result_json: Optional[str] = None
    error_message: Optional[str] = None
    related_entity_id: Optional[uuid.UUID] = None

    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskProgress(BaseModel):
    percent: float = 0.0
    current: int = 0
    total: int = 0
    message: Optional[str] = None
