#!filepath: tests/tasks/test_ingestion.py
from datetime import timedelta

import pytest

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import BackgroundTaskType, DatasetStatus
from modelfarm.contracts.market import KlineInterval
from modelfarm.contracts.tasks import BackgroundTask
from modelfarm.market_data.kline_store import KlineStore, klines_to_frame
from modelfarm.market_data.sources import CsvKlineSource, FrameKlineSource
from modelfarm.tasks import DataIngestionParameters, DataIngestionTaskHandler
from modelfarm.tasks.handlers.ingestion import estimate_record_count, validate_window
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.errors import Cancelled, InvalidArgument
from tests.conftest import T0, make_klines, random_walk

N = 300


@pytest.fixture
def klines():
    return make_klines(random_walk(N, seed=1))


@pytest.fixture
def source(klines):
    return FrameKlineSource({("BTCUSDT", "1h"): klines_to_frame(klines)})


@pytest.fixture
def store(tmp_path):
    return KlineStore(tmp_path / "klines")


def _dataset(repos, end=None, symbol="BTCUSDT"):
    ds = DatasetDefinition(
        name="btc",
        symbol=symbol,
        interval=KlineInterval.H1,
        start_time_utc=T0,
        end_time_utc=end or T0 + timedelta(hours=N - 1),
    )
    repos.datasets.upsert(ds)
    return ds


def _task(ds):
    return BackgroundTask(
        type=BackgroundTaskType.DATA_INGESTION,
        parameters_json=DataIngestionParameters.for_dataset(ds).model_dump_json(),
        related_entity_id=ds.id,
    )


class Recorder:
    def __init__(self):
        self.reports = []

    def __call__(self, progress):
        self.reports.append(progress)


def test_pages_through_source_and_marks_ready(repos, store, source, clock):
    ds = _dataset(repos)
    handler = DataIngestionTaskHandler(repos.datasets, store, source, clock=clock, page_size=100)
    report = Recorder()

    result = handler.execute(_task(ds), report, CancellationToken())

    assert result["total_records"] == N
    assert store.count(ds.id) == N
    stored = repos.datasets.get(ds.id)
    assert stored.status is DatasetStatus.READY
    assert stored.record_count == N

    percents = [p.percent for p in report.reports]
    assert percents[0] == 0
    assert percents[-1] == 100
    assert all(p <= 99 for p in percents[1:-1])
    assert len(percents) == 1 + 3 + 1


def test_transient_source_errors_are_retried(repos, store, source, clock):
    class Flaky:
        def __init__(self):
            self.calls = 0

        def fetch(self, *args):
            self.calls += 1
            if self.calls == 1:
                raise ConnectionError("reset by peer")
            return source.fetch(*args)

    flaky = Flaky()
    ds = _dataset(repos)
    handler = DataIngestionTaskHandler(repos.datasets, store, flaky, clock=clock, retry_delay=0.001)
    result = handler.execute(_task(ds), Recorder(), CancellationToken())
    assert result["total_records"] == N
    assert flaky.calls >= 2


def test_end_in_future_fails_dataset(repos, store, source, clock):
    ds = _dataset(repos, end=clock() + timedelta(days=1))
    handler = DataIngestionTaskHandler(repos.datasets, store, source, clock=clock)
    with pytest.raises(InvalidArgument, match="future"):
        handler.execute(_task(ds), Recorder(), CancellationToken())
    stored = repos.datasets.get(ds.id)
    assert stored.status is DatasetStatus.FAILED
    assert "future" in stored.error_message


def test_user_cancel_fails_dataset(repos, store, source, clock):
    ds = _dataset(repos)
    handler = DataIngestionTaskHandler(repos.datasets, store, source, clock=clock)
    token = CancellationToken()
    token.cancel("user")
    with pytest.raises(Cancelled):
        handler.execute(_task(ds), Recorder(), token)
    stored = repos.datasets.get(ds.id)
    assert stored.status is DatasetStatus.FAILED
    assert stored.error_message == "Ingestion was cancelled"


def test_shutdown_cancel_leaves_dataset_downloading(repos, store, source, clock):
    ds = _dataset(repos)
    handler = DataIngestionTaskHandler(repos.datasets, store, source, clock=clock)
    token = CancellationToken()
    token.cancel("shutdown")
    with pytest.raises(Cancelled):
        handler.execute(_task(ds), Recorder(), token)
    assert repos.datasets.get(ds.id).status is DatasetStatus.DOWNLOADING


def test_csv_source(tmp_path, klines, repos, store, clock):
    directory = tmp_path / "sources"
    directory.mkdir()
    klines_to_frame(klines).to_csv(directory / "BTCUSDT_1h.csv", index=False)

    ds = _dataset(repos)
    handler = DataIngestionTaskHandler(repos.datasets, store, CsvKlineSource(directory), clock=clock)
    handler.execute(_task(ds), Recorder(), CancellationToken())
    stored = store.read(ds.id)
    assert [k.open_time for k in stored] == [k.open_time for k in klines]
    assert [k.close for k in stored] == pytest.approx([k.close for k in klines])


def test_validate_window_rules(clock):
    now = clock()
    with pytest.raises(InvalidArgument, match="Symbol"):
        validate_window(" ", T0, T0 + timedelta(hours=1), now)
    with pytest.raises(InvalidArgument, match="before"):
        validate_window("BTCUSDT", T0, T0, now)
    validate_window("BTCUSDT", T0, now, now)


def test_estimate_record_count():
    assert estimate_record_count(KlineInterval.H1, T0, T0 + timedelta(hours=24)) == 24
    assert estimate_record_count(KlineInterval.M15, T0, T0 + timedelta(hours=1)) == 4
