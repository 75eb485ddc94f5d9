# modelfarm/contracts/enums.py
"""
Persisted enumerations.

Every value here is written to disk and to JSON as its integer; never
reorder or renumber members.
"""
from __future__ import annotations

from enum import IntEnum


class TrainingJobStatus(IntEnum):
    QUEUED = 0
    WAITING_FOR_DATA = 1
    PREPROCESSING = 2
    TRAINING = 3
    BACKTESTING = 4
    COMPLETED = 5
    FAILED = 6
    CANCELLED = 7

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {TrainingJobStatus.COMPLETED, TrainingJobStatus.FAILED, TrainingJobStatus.CANCELLED}
)
ACTIVE_JOB_STATUSES = frozenset(set(TrainingJobStatus) - TERMINAL_JOB_STATUSES)


class ModelType(IntEnum):
    LINEAR_REGRESSION = 0
    MLP = 1
    GRADIENT_BOOSTING = 2


class DatasetStatus(IntEnum):
    PENDING = 0
    DOWNLOADING = 1
    READY = 2
    FAILED = 3


class Exchange(IntEnum):
    BINANCE = 0


class ResourceType(IntEnum):
    CPU = 0
    GPU = 1
    RAM = 2


class BackgroundTaskType(IntEnum):
    DATA_INGESTION = 0
    MODEL_TRAINING = 1
    DATA_EXPORT = 2
    DATA_VALIDATION = 3


class BackgroundTaskStatus(IntEnum):
    PENDING = 0
    RUNNING = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset(
    {BackgroundTaskStatus.COMPLETED, BackgroundTaskStatus.FAILED, BackgroundTaskStatus.CANCELLED}
)


class ModelTestStatus(IntEnum):
    RUNNING = 0
    COMPLETED = 1
    FAILED = 2


class TradeDirection(IntEnum):
    LONG = 0
    SHORT = 1


class TradeSignal(IntEnum):
    HOLD = 0
    BUY = 1
    SELL = 2
