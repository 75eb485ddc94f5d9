# tests/persistence/test_jobs.py
import math
import uuid
from datetime import datetime, timedelta, timezone

from modelfarm.contracts.enums import TrainingJobStatus as S
from modelfarm.contracts.backtest import BacktestMetrics
from modelfarm.contracts.training import TrainingJob, TrainingJobResult
from modelfarm.persistence.jobs import MAX_MESSAGE_LENGTH


def _job(**kw) -> TrainingJob:
    return TrainingJob(name=kw.pop("name", "job"), configuration_id=kw.pop("configuration_id", uuid.uuid4()), **kw)


def test_upsert_and_get(repos):
    job = repos.jobs.upsert(_job(total_epochs=10, max_attempts=3))
    got = repos.jobs.get(job.id)
    assert got.id == job.id
    assert got.status is S.QUEUED
    assert got.total_epochs == 10
    assert got.max_attempts == 3
    assert got.message == ""
    assert repos.jobs.get(uuid.uuid4()) is None


def test_transition_requires_expected_status(repos):
    job = repos.jobs.upsert(_job())

    assert repos.jobs.transition(job.id, [S.QUEUED], S.PREPROCESSING, message="Preprocessing")
    # status moved on: second attempt is rejected
    assert not repos.jobs.transition(job.id, [S.QUEUED], S.TRAINING)

    got = repos.jobs.get(job.id)
    assert got.status is S.PREPROCESSING
    assert got.message == "Preprocessing"


def test_update_where_unknown_job(repos):
    assert not repos.jobs.update_where(uuid.uuid4(), [S.QUEUED], message="x")


def test_update_where_without_fields_is_noop(repos):
    job = repos.jobs.upsert(_job())
    assert not repos.jobs.update_where(job.id, [S.QUEUED])


def test_messages_are_truncated(repos):
    job = repos.jobs.upsert(_job())
    repos.jobs.update_where(job.id, [S.QUEUED], error_message="x" * 5000, message="y" * 2000)
    got = repos.jobs.get(job.id)
    assert len(got.error_message) == MAX_MESSAGE_LENGTH
    assert got.error_message.endswith("...")
    assert len(got.message) == MAX_MESSAGE_LENGTH


def test_list_filters(repos):
    cfg = uuid.uuid4()
    a = repos.jobs.upsert(_job(name="a", configuration_id=cfg))
    b = repos.jobs.upsert(_job(name="b", configuration_id=cfg, status=S.TRAINING))
    c = repos.jobs.upsert(_job(name="c", status=S.COMPLETED))

    assert {j.id for j in repos.jobs.list()} == {a.id, b.id, c.id}
    assert [j.id for j in repos.jobs.list(S.TRAINING)] == [b.id]
    assert {j.id for j in repos.jobs.list_in([S.QUEUED, S.TRAINING])} == {a.id, b.id}
    assert repos.jobs.list_in([]) == []
    assert {j.id for j in repos.jobs.list_for_configuration(cfg)} == {a.id, b.id}


def test_set_checkpoint_flag_ignores_status(repos):
    job = repos.jobs.upsert(_job(status=S.CANCELLED))
    assert repos.jobs.set_checkpoint_flag(job.id, True)
    assert repos.jobs.get(job.id).has_checkpoint
    # already in that state
    assert not repos.jobs.set_checkpoint_flag(job.id, True)
    assert repos.jobs.get(job.id).status is S.CANCELLED


def test_timestamps_and_result_round_trip(repos):
    started = datetime(2024, 3, 5, 9, 30, tzinfo=timezone(timedelta(hours=2)))
    result = TrainingJobResult(
        epochs_trained=12,
        final_train_loss=0.5,
        final_validation_loss=0.6,
        best_validation_loss=0.4,
        early_stopped=True,
        training_duration_seconds=3.5,
        attempts=1,
        final_learning_rate=0.01,
        backtest=BacktestMetrics(
            profit_factor=math.inf,
            backtest_start_utc=datetime(2024, 1, 1, tzinfo=timezone.utc),
            backtest_end_utc=datetime(2024, 2, 1, tzinfo=timezone.utc),
        ),
    )
    job = repos.jobs.upsert(_job(started_at=started))
    assert repos.jobs.update_where(job.id, [S.QUEUED], result=result)

    got = repos.jobs.get(job.id)
    assert got.started_at == started
    assert got.started_at.tzinfo is not None
    assert got.result.epochs_trained == 12
    assert got.result.backtest.profit_factor == math.inf
    assert got.result.backtest.backtest_end_utc == datetime(2024, 2, 1, tzinfo=timezone.utc)
