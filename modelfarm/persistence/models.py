# modelfarm/persistence/models.py
"""
ORM rows（SQLAlchemy 2.x declarative）

- TrainingJobRow / BackgroundTaskRow : one column per contract field
- *DocumentRow                      : body JSON + status / created_at lifted out
  for filtering and ordering

Enums are stored as their fixed integer codes; UUIDs via sa.Uuid.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, TypeDecorator, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from modelfarm.utils.datetime_utils import DateTimeUtils


class UtcDateTime(TypeDecorator):
    """
    sqlite has no tz: store naive UTC, hand back aware UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return DateTimeUtils.ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class TrainingJobRow(Base):
    __tablename__ = "training_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    configuration_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    queue_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[int] = mapped_column(Integer, index=True)

    current_epoch: Mapped[int] = mapped_column(Integer, default=0)
    total_epochs: Mapped[int] = mapped_column(Integer, default=0)
    training_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    validation_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    best_validation_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    epochs_since_improvement: Mapped[int] = mapped_column(Integer, default=0)
    current_learning_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    current_attempt: Mapped[int] = mapped_column(Integer, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1)

    is_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    message: Mapped[str] = mapped_column(Text, default="")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime)
    started_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)

    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    has_checkpoint: Mapped[bool] = mapped_column(Boolean, default=False)
    last_checkpoint_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    accumulated_training_seconds: Mapped[float] = mapped_column(Float, default=0.0)


class BackgroundTaskRow(Base):
    __tablename__ = "background_tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    type: Mapped[int] = mapped_column(Integer)
    parameters_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[int] = mapped_column(Integer, index=True)
    priority: Mapped[int] = mapped_column(Integer)

    progress_percent: Mapped[float] = mapped_column(Float, default=0.0)
    progress_current: Mapped[int] = mapped_column(Integer, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, default=0)
    progress_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)


class DocumentRow:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime)
    body: Mapped[dict] = mapped_column(JSON)


class ConfigurationRow(DocumentRow, Base):
    __tablename__ = "configurations"


class DatasetRow(DocumentRow, Base):
    __tablename__ = "datasets"


class ResourceContainerRow(DocumentRow, Base):
    __tablename__ = "resource_containers"


class ResourceQueueRow(DocumentRow, Base):
    __tablename__ = "resource_queues"


class ModelTestRow(DocumentRow, Base):
    __tablename__ = "model_tests"
