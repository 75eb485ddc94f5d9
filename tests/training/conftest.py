# tests/training/conftest.py
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from modelfarm.checkpoint import CheckpointStore
from modelfarm.config.orchestrator_config import OrchestratorConfig
from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import DatasetStatus, ModelType
from modelfarm.contracts.market import KlineInterval
from modelfarm.contracts.resources import HardwareInfo
from modelfarm.contracts.trading import PerformanceRequirements, TradingEnvironmentConfig
from modelfarm.contracts.training import TrainingConfiguration
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.resources.containers import ResourceContainerService
from modelfarm.resources.queues import ResourceQueueService
from modelfarm.training import SklearnTrainer, TrainingOrchestrator
from tests.conftest import T0, make_klines, sine_closes

FAST = OrchestratorConfig(
    progress_interval=0,
    pause_poll_interval=0.01,
    dataset_poll_interval=0.02,
    queue_poll_interval=0.01,
    join_timeout=10,
)


def make_config(dataset_id: uuid.UUID, **overrides) -> TrainingConfiguration:
    data = dict(
        name="linear-test",
        dataset_id=dataset_id,
        model_type=ModelType.LINEAR_REGRESSION,
        max_lags=3,
        forecast_horizon=1,
        hidden_layer_sizes=[8],
        learning_rate=0.01,
        batch_size=16,
        max_epochs=5,
        early_stopping_patience=50,
        use_early_stopping=False,
        validation_split=0.2,
        test_split=0.2,
        checkpoint_interval_epochs=2,
        performance_requirements=PerformanceRequirements(min_trade_count=0),
        trading_environment=TradingEnvironmentConfig.ideal(),
    )
    data.update(overrides)
    return TrainingConfiguration(**data)


def add_dataset(repos, klines_store, n=300, status=DatasetStatus.READY) -> DatasetDefinition:
    ds = DatasetDefinition(
        name="sine",
        symbol="BTCUSDT",
        interval=KlineInterval.H1,
        start_time_utc=T0,
        end_time_utc=T0 + timedelta(hours=n - 1),
        status=status,
    )
    if status is DatasetStatus.READY:
        ds = ds.model_copy(update={"record_count": klines_store.write(ds.id, make_klines(sine_closes(n)))})
    repos.datasets.upsert(ds)
    return ds


class Farm:
    """
    Orchestrator wired over one temp directory.
    """

    def __init__(self, repos, tmp_path, max_concurrent_jobs=1, **queue_limits):
        self.repos = repos
        self.klines = KlineStore(tmp_path / "klines")
        self.checkpoints = CheckpointStore(tmp_path / "checkpoints")
        self.containers = ResourceContainerService(repos.containers, repos.queues)
        self.queues = ResourceQueueService(repos.queues, self.containers, poll_interval=0.01)
        self.trainer = SklearnTrainer(pause_poll_interval=0.01)
        default = self.queues.ensure_default(HardwareInfo(cpu_count=4, gpu_count=0))
        if max_concurrent_jobs != 1 or queue_limits:
            default = self.queues.update(default.id, max_concurrent_jobs=max_concurrent_jobs, **queue_limits)
        self.queue = default
        self.orchestrator = TrainingOrchestrator(
            repos, self.queues, self.checkpoints, self.klines, self.trainer, config=FAST
        )

    def dataset(self, **kw) -> DatasetDefinition:
        return add_dataset(self.repos, self.klines, **kw)

    def config(self, dataset_id, **overrides) -> TrainingConfiguration:
        config = make_config(dataset_id, **overrides)
        self.repos.configurations.upsert(config)
        return config

    def job(self, job_id):
        return self.orchestrator.get_job(job_id)

    def status(self, job_id):
        return self.job(job_id).status


@pytest.fixture
def farm(repos, tmp_path):
    f = Farm(repos, tmp_path)
    yield f
    f.orchestrator.shutdown(timeout=10)


@pytest.fixture
def farm_factory(repos, tmp_path):
    created = []

    def build(**kw):
        f = Farm(repos, tmp_path, **kw)
        created.append(f)
        return f

    yield build
    for f in created:
        f.orchestrator.shutdown(timeout=10)
