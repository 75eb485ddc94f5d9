# modelfarm/persistence/jobs.py
"""
TrainingJob repository.

Status changes that can race with user commands go through
transition() / update_where(): one UPDATE keyed by id AND status IN (...).
rowcount == 0 means the expected status no longer holds.
"""
from __future__ import annotations

import uuid
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update

from modelfarm.contracts.enums import TrainingJobStatus
from modelfarm.contracts.training import TrainingJob

from .database import Database
from .models import TrainingJobRow

_MUTABLE = frozenset(c.name for c in TrainingJobRow.__table__.columns) - {"id", "created_at"}
_TEXT_FIELDS = ("message", "error_message")

MAX_MESSAGE_LENGTH = 1000


def _truncate(value: Optional[str]) -> Optional[str]:
    if value is None or len(value) <= MAX_MESSAGE_LENGTH:
        return value
    return value[: MAX_MESSAGE_LENGTH - 3] + "..."


def _column_value(key: str, value: Any) -> Any:
    if key in _TEXT_FIELDS:
        return _truncate(value)
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


class JobRepository:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _decode(row: TrainingJobRow) -> TrainingJob:
        data = row.to_dict()
        if data["message"] is None:
            data["message"] = ""
        return TrainingJob.model_validate(data)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def upsert(self, job: TrainingJob) -> TrainingJob:
        data = {k: _column_value(k, v) for k, v in job.model_dump().items()}
        with self.db.session() as s:
            s.merge(TrainingJobRow(**data))
        return job

    def get(self, job_id: uuid.UUID) -> Optional[TrainingJob]:
        with self.db.session() as s:
            row = s.get(TrainingJobRow, job_id)
            return self._decode(row) if row is not None else None

    def _select(self, *criteria, newest_first: bool = True) -> List[TrainingJob]:
        order = TrainingJobRow.created_at.desc() if newest_first else TrainingJobRow.created_at
        stmt = select(TrainingJobRow).where(*criteria).order_by(order)
        with self.db.session() as s:
            return [self._decode(r) for r in s.scalars(stmt)]

    def list(self, status: Optional[TrainingJobStatus] = None) -> List[TrainingJob]:
        if status is None:
            return self._select()
        return self._select(TrainingJobRow.status == int(status))

    def list_in(self, statuses: Iterable[TrainingJobStatus]) -> List[TrainingJob]:
        codes = [int(s) for s in statuses]
        if not codes:
            return []
        return self._select(TrainingJobRow.status.in_(codes), newest_first=False)

    def list_for_configuration(self, configuration_id: uuid.UUID) -> List[TrainingJob]:
        return self._select(TrainingJobRow.configuration_id == configuration_id)

    # ------------------------------------------------------------------
    # conditional updates
    # ------------------------------------------------------------------
    def update_where(
        self,
        job_id: uuid.UUID,
        expected: Iterable[TrainingJobStatus],
        **fields: Any,
    ) -> bool:
        """
        UPDATE … SET fields WHERE id = ? AND status IN (expected).
        Returns False when no row matched (missing job or status moved on).
        """
        codes = [int(s) for s in expected]
        if not fields or not codes:
            return False
        unknown = set(fields) - _MUTABLE
        if unknown:
            raise KeyError(f"Unknown job column(s): {sorted(unknown)}")

        stmt = (
            update(TrainingJobRow)
            .where(TrainingJobRow.id == job_id, TrainingJobRow.status.in_(codes))
            .values({k: _column_value(k, v) for k, v in fields.items()})
            .execution_options(synchronize_session=False)
        )
        with self.db.session() as s:
            return s.execute(stmt).rowcount == 1

    def transition(
        self,
        job_id: uuid.UUID,
        expected: Iterable[TrainingJobStatus],
        new_status: TrainingJobStatus,
        **fields: Any,
    ) -> bool:
        return self.update_where(job_id, expected, status=int(new_status), **fields)

    def set_checkpoint_flag(self, job_id: uuid.UUID, has_checkpoint: bool) -> bool:
        """
        Unconditional: the flag mirrors the checkpoint files whatever the status.
        """
        stmt = (
            update(TrainingJobRow)
            .where(TrainingJobRow.id == job_id, TrainingJobRow.has_checkpoint != has_checkpoint)
            .values(has_checkpoint=has_checkpoint)
            .execution_options(synchronize_session=False)
        )
        with self.db.session() as s:
            return s.execute(stmt).rowcount == 1
