#!filepath: tests/services/test_dataset_recovery.py
from datetime import timedelta

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import BackgroundTaskType, DatasetStatus
from modelfarm.contracts.market import KlineInterval
from modelfarm.services.dataset_recovery import RECOVERY_PRIORITY
from tests.conftest import T0


def _dataset(repos, status, task_id=None):
    ds = DatasetDefinition(
        name=f"ds-{status.name}",
        symbol="ETHUSDT",
        interval=KlineInterval.M15,
        start_time_utc=T0,
        end_time_utc=T0 + timedelta(days=1),
        status=status,
        ingestion_task_id=task_id,
    )
    repos.datasets.upsert(ds)
    return ds


def test_orphaned_datasets_get_new_tasks(recovery, repos, task_manager):
    orphan = _dataset(repos, DatasetStatus.DOWNLOADING)
    pending = _dataset(repos, DatasetStatus.PENDING)
    ready = _dataset(repos, DatasetStatus.READY)

    recovered = recovery.recover()
    assert set(recovered) == {orphan.id, pending.id}

    for ds_id in recovered:
        ds = repos.datasets.get(ds_id)
        assert ds.status is DatasetStatus.DOWNLOADING
        task = task_manager.get_task(ds.ingestion_task_id)
        assert task.priority == RECOVERY_PRIORITY
        assert task.related_entity_id == ds_id
    assert repos.datasets.get(ready.id).ingestion_task_id is None


def test_live_task_is_left_alone(recovery, repos, task_manager):
    task = task_manager.create_task(BackgroundTaskType.DATA_INGESTION, {})
    ds = _dataset(repos, DatasetStatus.DOWNLOADING, task_id=task.id)
    assert recovery.recover() == []
    assert repos.datasets.get(ds.id).ingestion_task_id == task.id


def test_terminal_task_is_replaced(recovery, repos, task_manager):
    task = task_manager.create_task(BackgroundTaskType.DATA_INGESTION, {})
    task_manager.cancel_task(task.id)
    ds = _dataset(repos, DatasetStatus.DOWNLOADING, task_id=task.id)

    assert recovery.recover() == [ds.id]
    assert repos.datasets.get(ds.id).ingestion_task_id != task.id
