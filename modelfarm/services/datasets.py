# modelfarm/services/datasets.py
"""
DatasetService

create → Pending → (DataIngestion task enqueued) → Downloading → Ready | Failed
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import BackgroundTaskType, DatasetStatus, Exchange
from modelfarm.contracts.market import Kline, KlineInterval
from modelfarm.contracts.tasks import DEFAULT_TASK_PRIORITY
from modelfarm.contracts.training import TrainingConfiguration
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.persistence.documents import DocumentRepository
from modelfarm.persistence.jobs import JobRepository
from modelfarm.tasks.handlers.ingestion import DataIngestionParameters, validate_window
from modelfarm.tasks.manager import BackgroundTaskManager
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import Conflict, InvalidArgument, NotFound
from modelfarm.utils.logger import logs


class DatasetService:
    def __init__(
        self,
        repo: DocumentRepository[DatasetDefinition],
        configurations: DocumentRepository[TrainingConfiguration],
        jobs: JobRepository,
        tasks: BackgroundTaskManager,
        klines: KlineStore,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.repo = repo
        self.configurations = configurations
        self.jobs = jobs
        self.tasks = tasks
        self.klines = klines
        self.clock = clock

    # ------------------------------------------------------------------
    def get(self, dataset_id: uuid.UUID) -> DatasetDefinition:
        dataset = self.repo.get(dataset_id)
        if dataset is None:
            raise NotFound(f"Dataset {dataset_id} not found")
        return dataset

    def list(self, status: Optional[DatasetStatus] = None) -> List[DatasetDefinition]:
        return self.repo.list(status)

    def get_klines(self, dataset_id: uuid.UUID) -> List[Kline]:
        self.get(dataset_id)
        if not self.klines.exists(dataset_id):
            return []
        return self.klines.read(dataset_id)

    # ------------------------------------------------------------------
    def create_dataset(
        self,
        name: str,
        symbol: str,
        interval: str | KlineInterval,
        start_time_utc: datetime | str,
        end_time_utc: datetime | str,
        exchange: Exchange = Exchange.BINANCE,
        description: Optional[str] = None,
    ) -> DatasetDefinition:
        if not name or not name.strip():
            raise InvalidArgument("Dataset name is required")
        try:
            interval = KlineInterval.parse(interval)
            start = DateTimeUtils.parse(start_time_utc)
            end = DateTimeUtils.parse(end_time_utc)
            exchange = Exchange(exchange)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        validate_window(symbol, start, end, self.clock())

        dataset = DatasetDefinition(
            name=name.strip(),
            description=description,
            exchange=exchange,
            symbol=symbol.strip().upper(),
            interval=interval,
            start_time_utc=start,
            end_time_utc=end,
            status=DatasetStatus.PENDING,
            created_at=self.clock(),
        )
        self.repo.upsert(dataset)
        logs.info(f"[Dataset] created {dataset.name} {dataset.symbol} {interval.value} id={dataset.id}")
        return self.enqueue_ingestion(dataset)

    def enqueue_ingestion(self, dataset: DatasetDefinition, priority: int = DEFAULT_TASK_PRIORITY) -> DatasetDefinition:
        task = self.tasks.create_task(
            BackgroundTaskType.DATA_INGESTION,
            DataIngestionParameters.for_dataset(dataset),
            priority=priority,
            related_entity_id=dataset.id,
        )
        dataset = dataset.model_copy(
            update={
                "status": DatasetStatus.DOWNLOADING,
                "ingestion_task_id": task.id,
                "error_message": None,
                "updated_at": self.clock(),
            }
        )
        self.repo.upsert(dataset)
        return dataset

    def delete(self, dataset_id: uuid.UUID, delete_data: bool = False) -> bool:
        dataset = self.repo.get(dataset_id)
        if dataset is None:
            return False

        for config in self.configurations.find(lambda c: c.dataset_id == dataset_id):
            if self.jobs.list_for_configuration(config.id):
                raise Conflict(f"Dataset {dataset.name} is referenced by training jobs of {config.name}")

        if dataset.ingestion_task_id is not None:
            self.tasks.cancel_task(dataset.ingestion_task_id)
        if delete_data:
            self.klines.delete(dataset_id)

        deleted = self.repo.delete(dataset_id)
        logs.info(f"[Dataset] deleted {dataset.name} (data removed={delete_data})")
        return deleted
