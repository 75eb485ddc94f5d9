# tests/persistence/test_database.py
import threading
import uuid

import pytest

from modelfarm.contracts.training import TrainingJob
from modelfarm.persistence import Database, Repositories
from modelfarm.persistence.models import TrainingJobRow


def test_memory_database_is_shared_across_threads():
    db = Database(":memory:")
    repos = Repositories.open(db)
    job = repos.jobs.upsert(TrainingJob(name="mem", configuration_id=uuid.uuid4()))

    seen = []
    t = threading.Thread(target=lambda: seen.append(repos.jobs.get(job.id)))
    t.start()
    t.join(5)
    db.close()

    assert seen[0].id == job.id


def test_session_rolls_back_on_error(repos):
    job = TrainingJob(name="a", configuration_id=uuid.uuid4())

    with pytest.raises(RuntimeError):
        with repos.db.session() as s:
            s.add(TrainingJobRow(**job.model_dump()))
            s.flush()
            raise RuntimeError("boom")

    assert repos.jobs.get(job.id) is None


def test_reopen_keeps_rows(tmp_path):
    path = tmp_path / "farm" / "modelfarm.db"
    db = Database(path)
    job = Repositories.open(db).jobs.upsert(TrainingJob(name="a", configuration_id=uuid.uuid4()))
    db.close()

    db = Database(path)
    try:
        assert Repositories.open(db).jobs.get(job.id).name == "a"
    finally:
        db.close()
