# modelfarm/persistence/tasks.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import or_, select

from modelfarm.contracts.enums import BackgroundTaskStatus, TERMINAL_TASK_STATUSES
from modelfarm.contracts.tasks import BackgroundTask

from .database import Database
from .models import BackgroundTaskRow


class TaskRepository:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _row(task: BackgroundTask) -> BackgroundTaskRow:
        return BackgroundTaskRow(**task.model_dump())

    @staticmethod
    def _decode(row: BackgroundTaskRow) -> BackgroundTask:
        return BackgroundTask.model_validate(row.to_dict())

    def upsert(self, task: BackgroundTask) -> None:
        with self.db.session() as s:
            s.merge(self._row(task))

    def upsert_many(self, tasks: Iterable[BackgroundTask]) -> int:
        """
        One transaction for the whole batch.
        """
        rows = [self._row(t) for t in tasks]
        if not rows:
            return 0
        with self.db.session() as s:
            for row in rows:
                s.merge(row)
        return len(rows)

    def get(self, task_id: uuid.UUID) -> Optional[BackgroundTask]:
        with self.db.session() as s:
            row = s.get(BackgroundTaskRow, task_id)
            return self._decode(row) if row is not None else None

    def list(self, status: Optional[BackgroundTaskStatus] = None) -> List[BackgroundTask]:
        stmt = select(BackgroundTaskRow).order_by(BackgroundTaskRow.created_at.desc())
        if status is not None:
            stmt = stmt.where(BackgroundTaskRow.status == int(status))
        with self.db.session() as s:
            return [self._decode(r) for r in s.scalars(stmt)]

    def load_for_startup(self, since: datetime) -> List[BackgroundTask]:
        """
        Tasks created after `since` plus every non-terminal task.
        """
        terminal = [int(s) for s in TERMINAL_TASK_STATUSES]
        stmt = (
            select(BackgroundTaskRow)
            .where(or_(BackgroundTaskRow.created_at >= since, BackgroundTaskRow.status.not_in(terminal)))
            .order_by(BackgroundTaskRow.created_at)
        )
        with self.db.session() as s:
            return [self._decode(r) for r in s.scalars(stmt)]
