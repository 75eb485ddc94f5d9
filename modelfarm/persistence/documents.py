# modelfarm/persistence/documents.py
from __future__ import annotations

import uuid
from typing import Callable, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import select

from .database import Database
from .models import DocumentRow

M = TypeVar("M", bound=BaseModel)


class DocumentRepository(Generic[M]):
    """
    Entity stored as one JSON body; status / created_at are lifted into
    columns for filtering and ordering.
    """

    def __init__(self, db: Database, row: Type[DocumentRow], model: Type[M], status_field: Optional[str] = None):
        self.db = db
        self.row = row
        self.model = model
        self.status_field = status_field

    def _status_of(self, entity: M) -> Optional[int]:
        if self.status_field is None:
            return None
        return int(getattr(entity, self.status_field))

    def _decode(self, row: DocumentRow) -> M:
        return self.model.model_validate(row.body)

    def upsert(self, entity: M) -> M:
        with self.db.session() as s:
            s.merge(
                self.row(
                    id=entity.id,
                    status=self._status_of(entity),
                    created_at=entity.created_at,
                    body=entity.model_dump(),
                )
            )
        return entity

    def get(self, entity_id: uuid.UUID) -> Optional[M]:
        with self.db.session() as s:
            row = s.get(self.row, entity_id)
            return self._decode(row) if row is not None else None

    def list(self, status=None) -> List[M]:
        stmt = select(self.row).order_by(self.row.created_at.desc())
        if status is not None:
            stmt = stmt.where(self.row.status == int(status))
        with self.db.session() as s:
            return [self._decode(r) for r in s.scalars(stmt)]

    def find(self, predicate: Callable[[M], bool]) -> List[M]:
        return [e for e in self.list() if predicate(e)]

    def delete(self, entity_id: uuid.UUID) -> bool:
        with self.db.session() as s:
            row = s.get(self.row, entity_id)
            if row is None:
                return False
            s.delete(row)
        return True
