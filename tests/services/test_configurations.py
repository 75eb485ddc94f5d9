#!filepath: tests/services/test_configurations.py
import uuid

import pytest

from modelfarm.contracts.enums import ModelType, TrainingJobStatus
from modelfarm.contracts.training import TrainingJob
from modelfarm.utils.errors import Conflict, InvalidArgument, NotFound
from tests.training.conftest import add_dataset


@pytest.fixture
def dataset(repos, klines):
    return add_dataset(repos, klines, n=50)


def _payload(dataset, **kw):
    data = {"name": "mlp-4", "dataset_id": str(dataset.id), "max_lags": 4, "max_epochs": 20}
    data.update(kw)
    return data


def _active_job(repos, config, status=TrainingJobStatus.TRAINING):
    job = TrainingJob(name="active", configuration_id=config.id, status=status)
    repos.jobs.upsert(job)
    return job


def test_create_and_get(configurations, dataset):
    config = configurations.create(_payload(dataset, id=str(uuid.uuid4())))
    assert config.model_type is ModelType.MLP
    assert config.dataset_id == dataset.id
    assert configurations.get(config.id).name == "mlp-4"
    assert [c.id for c in configurations.list()] == [config.id]


def test_create_rejects_invalid_fields(configurations, dataset):
    with pytest.raises(InvalidArgument, match="max_lags"):
        configurations.create(_payload(dataset, max_lags=0))
    with pytest.raises(InvalidArgument, match="validation_split"):
        configurations.create(_payload(dataset, validation_split=0.6, test_split=0.5))


def test_create_requires_existing_dataset(configurations):
    with pytest.raises(InvalidArgument, match="does not exist"):
        configurations.create({"name": "x", "dataset_id": str(uuid.uuid4())})


def test_get_missing_raises(configurations):
    with pytest.raises(NotFound):
        configurations.get(uuid.uuid4())


def test_update_hyperparameters_while_in_use(configurations, repos, dataset, clock):
    config = configurations.create(_payload(dataset))
    _active_job(repos, config)

    updated = configurations.update(config.id, {"learning_rate": 0.05, "max_epochs": 99})
    assert updated.learning_rate == 0.05
    assert updated.max_epochs == 99
    assert updated.updated_at == clock.now
    assert updated.created_at == config.created_at


def test_shape_change_rejected_while_in_use(configurations, repos, dataset):
    config = configurations.create(_payload(dataset))
    _active_job(repos, config, TrainingJobStatus.QUEUED)

    with pytest.raises(Conflict, match="max_lags"):
        configurations.update(config.id, {"max_lags": 8})
    assert configurations.get(config.id).max_lags == 4


def test_shape_change_allowed_once_jobs_are_terminal(configurations, repos, dataset):
    config = configurations.create(_payload(dataset))
    _active_job(repos, config, TrainingJobStatus.COMPLETED)
    assert configurations.update(config.id, {"hidden_layer_sizes": [16]}).hidden_layer_sizes == [16]


def test_delete(configurations, repos, dataset):
    config = configurations.create(_payload(dataset))
    job = _active_job(repos, config)
    with pytest.raises(Conflict):
        configurations.delete(config.id)

    repos.jobs.transition(job.id, {TrainingJobStatus.TRAINING}, TrainingJobStatus.CANCELLED)
    assert configurations.delete(config.id)
    assert not configurations.delete(config.id)
