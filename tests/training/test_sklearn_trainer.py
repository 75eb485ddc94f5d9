#!filepath: tests/training/test_sklearn_trainer.py
import math
import uuid

import numpy as np
import pytest

from modelfarm.checkpoint import CheckpointStore
from modelfarm.contracts.enums import ModelType
from modelfarm.training import SklearnTrainer, preprocess
from modelfarm.training import sklearn_trainer as sk
from modelfarm.training.sklearn_trainer import load_model
from modelfarm.training.trainer import GradientBoostingSpec, LinearRegressionSpec, MLPSpec, model_spec_for
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.errors import Cancelled, TrainerError
from tests.conftest import make_klines, sine_closes
from tests.training.conftest import make_config


@pytest.fixture
def config():
    return make_config(uuid.uuid4())


@pytest.fixture
def prepared(config):
    return preprocess(make_klines(sine_closes(200)), config)


@pytest.fixture
def trainer():
    return SklearnTrainer(pause_poll_interval=0.01)


def _train_ckpt(trainer, prepared, config, store, job_id, **kw):
    return trainer.train_with_checkpoints(
        prepared.train,
        prepared.validation,
        config,
        store=store,
        job_id=job_id,
        norm_stats=prepared.norm_stats,
        feature_names=prepared.feature_names,
        checkpoint_every=config.checkpoint_every,
        **kw,
    )


def test_model_spec_for_each_type(config):
    assert isinstance(model_spec_for(config), LinearRegressionSpec)
    mlp = model_spec_for(config.model_copy(update={"model_type": ModelType.MLP, "hidden_layer_sizes": [16, 8]}))
    assert isinstance(mlp, MLPSpec) and mlp.hidden_layer_sizes == (16, 8)
    gb = model_spec_for(config.model_copy(update={"model_type": ModelType.GRADIENT_BOOSTING}))
    assert isinstance(gb, GradientBoostingSpec)


@pytest.mark.parametrize(
    "model_type", [ModelType.LINEAR_REGRESSION, ModelType.MLP, ModelType.GRADIENT_BOOSTING]
)
def test_every_model_family_trains(trainer, prepared, config, model_type):
    config = config.model_copy(update={"model_type": model_type, "max_epochs": 3})
    epochs = []
    result = trainer.train(prepared.train, prepared.validation, config, progress=lambda p: epochs.append(p.epoch))
    assert epochs == [1, 2, 3]
    assert result.epochs_trained == 3
    assert math.isfinite(result.best_validation_loss)
    assert result.best_validation_loss <= result.final_validation_loss + 1e-12
    assert result.model.model_type is model_type
    assert result.model.feature_count == config.max_lags
    preds = result.model.predict_batch(np.vstack([s.features for s in prepared.test]))
    assert preds.shape == (len(prepared.test),)


def test_early_stopping_after_patience(trainer, prepared, config, monkeypatch):
    monkeypatch.setattr(sk, "_mse", lambda est, X, y: 1.0)
    config = config.model_copy(
        update={"use_early_stopping": True, "early_stopping_patience": 2, "max_epochs": 100}
    )
    result = trainer.train(prepared.train, prepared.validation, config)
    # epoch 1 sets best, epochs 2 and 3 do not improve
    assert result.early_stopped
    assert result.epochs_trained == 3


def test_non_finite_loss_raises_trainer_error(trainer, prepared, config, monkeypatch):
    monkeypatch.setattr(sk, "_mse", lambda est, X, y: float("nan"))
    with pytest.raises(TrainerError, match="diverged"):
        trainer.train(prepared.train, prepared.validation, config)


def test_cancelled_token_stops_training(trainer, prepared, config):
    token = CancellationToken()
    token.cancel("user")
    with pytest.raises(Cancelled):
        trainer.train(prepared.train, prepared.validation, config, token=token)


def test_checkpoint_cadence_and_final_checkpoint(trainer, prepared, config, tmp_path):
    store = CheckpointStore(tmp_path / "ckpt")
    job_id = uuid.uuid4()
    saved = []
    result = _train_ckpt(trainer, prepared, config, store, job_id, on_checkpoint_saved=lambda c: saved.append(c.epoch))

    assert saved == [2, 4, 5]
    ckpt = store.load(job_id)
    assert ckpt.epoch == 5
    assert ckpt.feature_names == prepared.feature_names
    assert ckpt.norm_stats() == prepared.norm_stats
    assert store.is_valid(job_id)

    best = load_model(store.read_weights(job_id, best=True))
    x = prepared.test[0].features
    assert best.predict(x) == pytest.approx(result.model.predict(x))


def test_checkpoints_disabled(trainer, prepared, config, tmp_path):
    store = CheckpointStore(tmp_path / "ckpt")
    config = config.model_copy(update={"save_checkpoints": False})
    job_id = uuid.uuid4()
    _train_ckpt(trainer, prepared, config, store, job_id)
    assert not store.exists(job_id)


def test_resume_continues_from_next_epoch(trainer, prepared, config, tmp_path):
    store = CheckpointStore(tmp_path / "ckpt")
    job_id = uuid.uuid4()
    _train_ckpt(trainer, prepared, config.model_copy(update={"max_epochs": 4}), store, job_id)
    ckpt = store.load(job_id)
    assert ckpt.epoch == 4

    epochs = []
    result = _train_ckpt(
        trainer,
        prepared,
        config.model_copy(update={"max_epochs": 6}),
        store,
        job_id,
        resume_from=ckpt,
        progress=lambda p: epochs.append(p.epoch),
    )
    assert epochs == [5, 6]
    assert result.epochs_trained == 6
    assert result.best_validation_loss <= ckpt.best_validation_loss
    assert store.load(job_id).epoch == 6


def test_pause_blocks_until_unpaused(trainer, prepared, config):
    polls = {"n": 0}

    def is_paused():
        polls["n"] += 1
        return polls["n"] <= 3

    result = trainer.train_with_checkpoints(
        prepared.train,
        prepared.validation,
        config,
        store=None,
        job_id=uuid.uuid4(),
        norm_stats=prepared.norm_stats,
        feature_names=prepared.feature_names,
        checkpoint_every=0,
        is_paused=is_paused,
    )
    assert polls["n"] > 3
    assert result.epochs_trained == config.max_epochs


def test_evaluate_metrics(trainer, prepared, config):
    result = trainer.train(prepared.train, prepared.validation, config)
    evaluation = trainer.evaluate(result.model, prepared.test)
    assert evaluation.sample_count == len(prepared.test)
    assert evaluation.rmse == pytest.approx(math.sqrt(evaluation.mse))
    assert evaluation.mae >= 0
    assert evaluation.r_squared <= 1.0

    empty = trainer.evaluate(result.model, [])
    assert empty.sample_count == 0 and empty.mse == 0.0


def test_save_load_and_dispose(trainer, prepared, config, tmp_path):
    result = trainer.train(prepared.train, prepared.validation, config)
    path = tmp_path / "model.joblib"
    result.model.save(path)
    loaded = trainer.load_model(path)
    x = prepared.test[0].features
    assert loaded.predict(x) == pytest.approx(result.model.predict(x))

    result.model.dispose()
    with pytest.raises(TrainerError):
        result.model.predict(x)
