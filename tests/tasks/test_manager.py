#!filepath: tests/tasks/test_manager.py
import json
from datetime import timedelta

import pytest

from modelfarm.config.dispatcher_config import DispatcherConfig
from modelfarm.contracts.enums import BackgroundTaskStatus, BackgroundTaskType
from modelfarm.contracts.tasks import BackgroundTask, TaskProgress
from modelfarm.tasks import BackgroundTaskManager
from modelfarm.tasks.manager import CANCELLED_MESSAGE

INGEST = BackgroundTaskType.DATA_INGESTION


@pytest.fixture
def manager(repos, clock):
    return BackgroundTaskManager(repos.tasks, DispatcherConfig(), clock=clock)


def test_create_task_is_persisted_on_flush(manager, repos):
    task = manager.create_task(INGEST, {"symbol": "BTCUSDT"}, priority=100)
    assert repos.tasks.get(task.id) is None
    manager.flush()
    stored = repos.tasks.get(task.id)
    assert stored.status is BackgroundTaskStatus.PENDING
    assert json.loads(stored.parameters_json) == {"symbol": "BTCUSDT"}


def test_dequeue_by_priority_then_age(manager, clock):
    old_low = manager.create_task(INGEST, priority=100)
    clock.advance(seconds=1)
    urgent = manager.create_task(INGEST, priority=10)
    clock.advance(seconds=1)
    new_low = manager.create_task(INGEST, priority=100)

    order = []
    while (claimed := manager.try_dequeue()) is not None:
        order.append(claimed[0].id)
    assert order == [urgent.id, old_low.id, new_low.id]
    assert manager.get_task(urgent.id).status is BackgroundTaskStatus.RUNNING
    assert manager.get_task(urgent.id).started_at is not None


def test_progress_persisted_only_at_quarter_steps(manager, repos):
    task = manager.create_task(INGEST)
    manager.try_dequeue()
    manager.flush()

    manager.report_progress(task.id, TaskProgress(percent=10, current=1, total=10))
    manager.flush()
    assert repos.tasks.get(task.id).progress_percent == 0
    assert manager.get_task(task.id).progress_percent == 10

    manager.report_progress(task.id, TaskProgress(percent=30, current=3, total=10))
    manager.flush()
    assert repos.tasks.get(task.id).progress_percent == 30

    manager.report_progress(task.id, TaskProgress(percent=40, current=4, total=10))
    manager.flush()
    assert repos.tasks.get(task.id).progress_percent == 30

    manager.report_progress(task.id, TaskProgress(percent=100, current=10, total=10))
    manager.flush()
    assert repos.tasks.get(task.id).progress_percent == 100


def test_progress_is_clamped(manager):
    task = manager.create_task(INGEST)
    manager.try_dequeue()
    manager.report_progress(task.id, TaskProgress(percent=250))
    assert manager.get_task(task.id).progress_percent == 100


def test_terminal_status_is_write_once(manager, repos):
    task = manager.create_task(INGEST)
    manager.try_dequeue()
    assert manager.complete(task.id, {"total_records": 5})
    assert not manager.fail(task.id, "late")
    manager.flush()

    stored = repos.tasks.get(task.id)
    assert stored.status is BackgroundTaskStatus.COMPLETED
    assert stored.progress_percent == 100
    assert json.loads(stored.result_json) == {"total_records": 5}
    assert stored.completed_at is not None


def test_cancel_pending_task(manager, repos):
    task = manager.create_task(INGEST)
    assert manager.cancel_task(task.id)
    assert manager.try_dequeue() is None
    manager.flush()
    stored = repos.tasks.get(task.id)
    assert stored.status is BackgroundTaskStatus.CANCELLED
    assert stored.error_message == CANCELLED_MESSAGE
    assert not manager.cancel_task(task.id)


def test_cancel_running_task_fires_token(manager):
    task = manager.create_task(INGEST)
    _, token = manager.try_dequeue()
    assert manager.cancel_task(task.id)
    assert token.cancelled and token.reason == "user"


def test_filters_and_entity_lookup(manager):
    import uuid

    entity = uuid.uuid4()
    a = manager.create_task(INGEST, related_entity_id=entity)
    manager.create_task(BackgroundTaskType.DATA_EXPORT)
    assert [t.id for t in manager.tasks_for_entity(entity)] == [a.id]
    assert len(manager.list_tasks(type_=INGEST)) == 1
    assert len(manager.list_tasks(status=BackgroundTaskStatus.PENDING)) == 2


def test_startup_reconciliation_demotes_running(repos, clock):
    now = clock()
    running = BackgroundTask(
        type=INGEST,
        status=BackgroundTaskStatus.RUNNING,
        created_at=now - timedelta(hours=48),
        started_at=now - timedelta(hours=47),
    )
    pending = BackgroundTask(type=INGEST, created_at=now - timedelta(hours=1))
    recent_done = BackgroundTask(
        type=INGEST, status=BackgroundTaskStatus.COMPLETED, created_at=now - timedelta(hours=2)
    )
    old_done = BackgroundTask(
        type=INGEST, status=BackgroundTaskStatus.COMPLETED, created_at=now - timedelta(hours=72)
    )
    repos.tasks.upsert_many([running, pending, recent_done, old_done])

    manager = BackgroundTaskManager(repos.tasks, DispatcherConfig(), clock=clock)
    assert manager.wait_for_work(timeout=0.1)

    demoted = manager.get_task(running.id)
    assert demoted.status is BackgroundTaskStatus.PENDING
    assert demoted.started_at is None
    loaded = {t.id for t in manager.list_tasks()}
    assert loaded == {running.id, pending.id, recent_done.id}

    manager.flush()
    assert repos.tasks.get(running.id).status is BackgroundTaskStatus.PENDING

    # both pending tasks were signalled
    assert manager.wait_for_work(timeout=0.1)
    assert not manager.wait_for_work(timeout=0.05)


def test_drainer_persists_in_background(manager, repos):
    from tests.conftest import wait_until

    manager.start()
    try:
        task = manager.create_task(INGEST)
        assert wait_until(lambda: repos.tasks.get(task.id) is not None, timeout=5)
    finally:
        manager.stop()
