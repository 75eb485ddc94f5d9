# modelfarm/services/dataset_recovery.py
from __future__ import annotations

from typing import List

from modelfarm.contracts.enums import DatasetStatus
from modelfarm.utils.logger import logs

from .datasets import DatasetService

RECOVERY_PRIORITY = 50


class DatasetRecoveryService:
    """
    Startup pass: a Pending / Downloading dataset whose ingestion task is
    missing or already terminal gets a fresh ingestion task (priority 50).
    Runs after the task manager has loaded its tasks.
    """

    def __init__(self, datasets: DatasetService):
        self.datasets = datasets

    def recover(self) -> List:
        recovered = []
        tasks = self.datasets.tasks
        for status in (DatasetStatus.PENDING, DatasetStatus.DOWNLOADING):
            for dataset in self.datasets.list(status):
                task = tasks.get_task(dataset.ingestion_task_id) if dataset.ingestion_task_id else None
                if task is not None and not task.status.is_terminal:
                    continue
                self.datasets.enqueue_ingestion(dataset, priority=RECOVERY_PRIORITY)
                recovered.append(dataset.id)
                logs.info(f"[DatasetRecovery] re-queued ingestion for {dataset.name} ({dataset.id})")
        if recovered:
            logs.info(f"[DatasetRecovery] recovered {len(recovered)} dataset(s)")
        return recovered
