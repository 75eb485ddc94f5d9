# modelfarm/persistence/repositories.py
from __future__ import annotations

from dataclasses import dataclass

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.resources import ResourceContainer, ResourceQueue
from modelfarm.contracts.testing import ModelTest
from modelfarm.contracts.training import TrainingConfiguration

from .database import Database
from .documents import DocumentRepository
from .jobs import JobRepository
from .models import ConfigurationRow, DatasetRow, ModelTestRow, ResourceContainerRow, ResourceQueueRow
from .tasks import TaskRepository


@dataclass
class Repositories:
    """
    Every repository over one Database.
    """

    db: Database
    jobs: JobRepository
    tasks: TaskRepository
    configurations: DocumentRepository[TrainingConfiguration]
    datasets: DocumentRepository[DatasetDefinition]
    containers: DocumentRepository[ResourceContainer]
    queues: DocumentRepository[ResourceQueue]
    model_tests: DocumentRepository[ModelTest]

    @classmethod
    def open(cls, db: Database) -> "Repositories":
        return cls(
            db=db,
            jobs=JobRepository(db),
            tasks=TaskRepository(db),
            configurations=DocumentRepository(db, ConfigurationRow, TrainingConfiguration),
            datasets=DocumentRepository(db, DatasetRow, DatasetDefinition, status_field="status"),
            containers=DocumentRepository(db, ResourceContainerRow, ResourceContainer),
            queues=DocumentRepository(db, ResourceQueueRow, ResourceQueue),
            model_tests=DocumentRepository(db, ModelTestRow, ModelTest, status_field="status"),
        )
