# modelfarm/services/configurations.py
"""
TrainingConfiguration CRUD.

A configuration referenced by a non-terminal job cannot change its
tensor shape (model_type / max_lags / forecast_horizon / hidden sizes)
and cannot be deleted.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, List

from pydantic import ValidationError

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.training import SHAPE_FIELDS, TrainingConfiguration
from modelfarm.persistence.documents import DocumentRepository
from modelfarm.persistence.jobs import JobRepository
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import Conflict, InvalidArgument, NotFound
from modelfarm.utils.logger import logs

_IMMUTABLE = {"id", "created_at", "updated_at"}


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "configuration"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ConfigurationService:
    def __init__(
        self,
        repo: DocumentRepository[TrainingConfiguration],
        jobs: JobRepository,
        datasets: DocumentRepository[DatasetDefinition],
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.repo = repo
        self.jobs = jobs
        self.datasets = datasets
        self.clock = clock

    # ------------------------------------------------------------------
    def get(self, configuration_id: uuid.UUID) -> TrainingConfiguration:
        config = self.repo.get(configuration_id)
        if config is None:
            raise NotFound(f"Configuration {configuration_id} not found")
        return config

    def list(self) -> List[TrainingConfiguration]:
        return self.repo.list()

    def in_use(self, configuration_id: uuid.UUID) -> bool:
        return any(not j.is_terminal for j in self.jobs.list_for_configuration(configuration_id))

    # ------------------------------------------------------------------
    def create(self, data: dict | TrainingConfiguration) -> TrainingConfiguration:
        try:
            if isinstance(data, TrainingConfiguration):
                config = TrainingConfiguration.model_validate(data.model_dump())
            else:
                payload = {k: v for k, v in dict(data).items() if k not in _IMMUTABLE}
                config = TrainingConfiguration.model_validate(payload)
        except ValidationError as e:
            raise InvalidArgument(_validation_message(e)) from e

        if self.datasets.get(config.dataset_id) is None:
            raise InvalidArgument(f"Dataset {config.dataset_id} does not exist")

        self.repo.upsert(config)
        logs.info(f"[Configuration] created {config.name} ({config.model_type.name}) id={config.id}")
        return config

    def update(self, configuration_id: uuid.UUID, changes: dict[str, Any]) -> TrainingConfiguration:
        current = self.get(configuration_id)
        changes = {k: v for k, v in changes.items() if k not in _IMMUTABLE}

        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = self.clock()
        try:
            updated = TrainingConfiguration.model_validate(merged)
        except ValidationError as e:
            raise InvalidArgument(_validation_message(e)) from e

        shape_changed = [f for f in SHAPE_FIELDS if getattr(updated, f) != getattr(current, f)]
        if shape_changed and self.in_use(configuration_id):
            raise Conflict(
                f"Configuration {current.name} is used by an active job; "
                f"cannot change {', '.join(shape_changed)}"
            )
        if updated.dataset_id != current.dataset_id and self.datasets.get(updated.dataset_id) is None:
            raise InvalidArgument(f"Dataset {updated.dataset_id} does not exist")

        self.repo.upsert(updated)
        logs.info(f"[Configuration] updated {updated.name} fields={sorted(changes)}")
        return updated

    def delete(self, configuration_id: uuid.UUID) -> bool:
        config = self.repo.get(configuration_id)
        if config is None:
            return False
        if self.in_use(configuration_id):
            raise Conflict(f"Configuration {config.name} is used by an active job")
        deleted = self.repo.delete(configuration_id)
        logs.info(f"[Configuration] deleted {config.name}")
        return deleted
