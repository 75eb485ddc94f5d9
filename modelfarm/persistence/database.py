# modelfarm/persistence/database.py
"""
SQLite store of record behind SQLAlchemy.

Sessions are serialised by an RLock so the write-behind batcher and the
job threads never contend for the sqlite write lock; WAL mode keeps
readers from blocking it.
"""
from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.filesystem import FileSystem
from modelfarm.utils.logger import logs

from .models import Base

MEMORY = ":memory:"


def dumps(obj: Any) -> str:
    """
    JSON column serializer: datetimes as ISO UTC, enums as codes.
    """

    def _default(o):
        if isinstance(o, datetime):
            return DateTimeUtils.ensure_utc(o).isoformat()
        if isinstance(o, Enum):
            return o.value
        return str(o)

    return json.dumps(obj, default=_default)


class Database:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        if str(path) == MEMORY:
            # one shared connection, otherwise every thread sees its own empty db
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                json_serializer=dumps,
            )
        else:
            FileSystem.ensure_dir(self.path.parent)
            self.engine = create_engine(
                f"sqlite:///{self.path}",
                connect_args={"check_same_thread": False},
                json_serializer=dumps,
            )
            event.listen(self.engine, "connect", _enable_wal)

        self._lock = threading.RLock()
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logs.info(f"[Database] opened {self.path}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        One transaction: commit on success, rollback on any exception.
        """
        with self._lock:
            with self._sessions.begin() as s:
                yield s

    def close(self) -> None:
        with self._lock:
            self.engine.dispose()


def _enable_wal(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")
    cur.close()
