# tests/services/conftest.py
import pytest

from modelfarm.market_data.kline_store import KlineStore
from modelfarm.services import ConfigurationService, DatasetRecoveryService, DatasetService
from modelfarm.tasks.manager import BackgroundTaskManager


@pytest.fixture
def klines(tmp_path):
    return KlineStore(tmp_path / "klines")


@pytest.fixture
def task_manager(repos, clock):
    return BackgroundTaskManager(repos.tasks, clock=clock)


@pytest.fixture
def datasets(repos, task_manager, klines, clock):
    return DatasetService(repos.datasets, repos.configurations, repos.jobs, task_manager, klines, clock=clock)


@pytest.fixture
def configurations(repos, clock):
    return ConfigurationService(repos.configurations, repos.jobs, repos.datasets, clock=clock)


@pytest.fixture
def recovery(datasets):
    return DatasetRecoveryService(datasets)
