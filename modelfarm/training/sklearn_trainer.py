# modelfarm/training/sklearn_trainer.py
"""
SklearnTrainer（FINAL）

Epoch semantics per model family:

    LinearRegression  SGDRegressor.partial_fit         one pass over train
    MLP               MLPRegressor.partial_fit         one pass (mini-batches)
    GradientBoosting  GradientBoostingRegressor        +1 tree (warm_start)

Loss is MSE on train and validation after each epoch. Weights are joblib
blobs, so a checkpoint reloads into an estimator that predicts exactly
as the one that was saved.
"""
from __future__ import annotations

import copy
import io
import math
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import joblib
import numpy as np
from sklearn.ensemble import GradientBoostingRegressor
from sklearn.linear_model import SGDRegressor
from sklearn.metrics import mean_absolute_error, mean_squared_error
from sklearn.neural_network import MLPRegressor

from modelfarm.checkpoint.model import TrainingCheckpoint
from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.contracts.enums import ModelType
from modelfarm.contracts.training import TrainingConfiguration
from modelfarm.features.engineering import TrainingSample, to_arrays
from modelfarm.features.normalization import NormalizationStats
from modelfarm.observability.progress import ProgressReporter
from modelfarm.observability.timer import Timer
from modelfarm.utils.cancellation import CancellationToken, NONE
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import TrainerError
from modelfarm.utils.logger import logs

from .trainer import (
    CheckpointSink,
    EpochProgress,
    EvaluationResult,
    GradientBoostingSpec,
    LinearRegressionSpec,
    MLPSpec,
    ModelSpec,
    ProgressSink,
    TrainingResult,
    model_spec_for,
)

WEIGHTS_EXT = "joblib"


# ============================================================
# TrainedModel
# ============================================================
class SklearnModel:
    """
    Opaque handle around a fitted estimator.
    """

    def __init__(self, estimator, model_type: ModelType, feature_count: int):
        self.estimator = estimator
        self.model_type = ModelType(model_type)
        self.feature_count = feature_count

    def _require(self):
        if self.estimator is None:
            raise TrainerError("Model has been disposed")
        return self.estimator

    def predict(self, features: Sequence[float]) -> float:
        x = np.asarray(features, dtype=np.float64).reshape(1, -1)
        return float(self._require().predict(x)[0])

    def predict_batch(self, features: np.ndarray) -> np.ndarray:
        X = np.asarray(features, dtype=np.float64)
        if X.size == 0:
            return np.empty(0, dtype=np.float64)
        return np.asarray(self._require().predict(X), dtype=np.float64)

    def to_bytes(self) -> bytes:
        return dump_estimator(self._require(), self.model_type, self.feature_count)

    def save(self, path) -> None:
        Path(path).write_bytes(self.to_bytes())

    def dispose(self) -> None:
        self.estimator = None


def dump_estimator(estimator, model_type: ModelType, feature_count: int) -> bytes:
    buf = io.BytesIO()
    joblib.dump(
        {"estimator": estimator, "model_type": int(model_type), "feature_count": feature_count},
        buf,
    )
    return buf.getvalue()


def load_model(source) -> SklearnModel:
    """
    source: path to a .joblib blob, or the blob bytes.
    """
    if isinstance(source, (bytes, bytearray)):
        payload = joblib.load(io.BytesIO(source))
    else:
        payload = joblib.load(Path(source))
    return SklearnModel(payload["estimator"], ModelType(payload["model_type"]), int(payload["feature_count"]))


# ============================================================
# estimator construction
# ============================================================
def build_estimator(spec: ModelSpec, learning_rate: float, batch_size: int, seed: int):
    if isinstance(spec, LinearRegressionSpec):
        return SGDRegressor(
            learning_rate="constant",
            eta0=learning_rate,
            random_state=seed,
        )
    if isinstance(spec, MLPSpec):
        return MLPRegressor(
            hidden_layer_sizes=spec.hidden_layer_sizes,
            learning_rate_init=learning_rate,
            batch_size=batch_size,
            random_state=seed,
        )
    if isinstance(spec, GradientBoostingSpec):
        return GradientBoostingRegressor(
            n_estimators=1,
            learning_rate=learning_rate,
            max_depth=spec.max_depth,
            random_state=seed,
            warm_start=True,
        )
    raise TrainerError(f"Unsupported model spec {spec!r}")


def _set_learning_rate(estimator, learning_rate: float) -> None:
    if isinstance(estimator, SGDRegressor):
        estimator.set_params(eta0=learning_rate)
    elif isinstance(estimator, MLPRegressor):
        estimator.set_params(learning_rate_init=learning_rate)
    elif isinstance(estimator, GradientBoostingRegressor):
        estimator.set_params(learning_rate=learning_rate)


def _fit_one_epoch(estimator, X: np.ndarray, y: np.ndarray, epoch: int) -> None:
    if isinstance(estimator, GradientBoostingRegressor):
        estimator.set_params(n_estimators=epoch)
        estimator.fit(X, y)
    elif isinstance(estimator, MLPRegressor):
        estimator.set_params(batch_size=min(estimator.batch_size, len(X)))
        estimator.partial_fit(X, y)
    else:
        estimator.partial_fit(X, y)


def _mse(estimator, X: np.ndarray, y: np.ndarray) -> float:
    if len(X) == 0:
        return 0.0
    return float(mean_squared_error(y, estimator.predict(X)))


# ============================================================
# Trainer
# ============================================================
class SklearnTrainer:
    weights_ext = WEIGHTS_EXT

    def __init__(self, pause_poll_interval: float = 0.1):
        self.pause_poll_interval = pause_poll_interval
        self.progress_log = ProgressReporter(enabled=True)

    def load_model(self, source) -> SklearnModel:
        return load_model(source)

    # ------------------------------------------------------------------
    def train(
        self,
        train: Sequence[TrainingSample],
        validation: Sequence[TrainingSample],
        config: TrainingConfiguration,
        progress: Optional[ProgressSink] = None,
        token: CancellationToken = NONE,
        learning_rate: Optional[float] = None,
    ) -> TrainingResult:
        return self.train_with_checkpoints(
            train,
            validation,
            config,
            store=None,
            job_id=uuid.uuid4(),
            norm_stats=NormalizationStats([], []),
            feature_names=[],
            checkpoint_every=0,
            learning_rate=learning_rate,
            progress=progress,
            token=token,
        )

    def train_with_checkpoints(
        self,
        train: Sequence[TrainingSample],
        validation: Sequence[TrainingSample],
        config: TrainingConfiguration,
        *,
        store: Optional[CheckpointStore],
        job_id: uuid.UUID,
        norm_stats: NormalizationStats,
        feature_names: List[str],
        checkpoint_every: int,
        resume_from: Optional[TrainingCheckpoint] = None,
        learning_rate: Optional[float] = None,
        attempt: int = 1,
        progress: Optional[ProgressSink] = None,
        on_checkpoint_saved: Optional[CheckpointSink] = None,
        is_paused: Optional[Callable[[], bool]] = None,
        token: CancellationToken = NONE,
    ) -> TrainingResult:
        X_train, y_train = to_arrays(train)
        X_val, y_val = to_arrays(validation)
        if len(X_train) == 0:
            raise TrainerError("Training split is empty")
        has_val = len(X_val) > 0
        feature_count = X_train.shape[1]

        spec = model_spec_for(config)
        model_type = config.model_type

        # ---------------- initial / resumed state ----------------
        if resume_from is not None:
            lr = resume_from.current_learning_rate
            estimator = load_model(store.read_weights(job_id, best=False)).estimator
            best_estimator = load_model(store.read_weights(job_id, best=True)).estimator
            _set_learning_rate(estimator, lr)
            start_epoch = resume_from.epoch + 1
            best_val = resume_from.best_validation_loss
            since_improvement = resume_from.epochs_since_improvement
            prior_seconds = resume_from.total_training_seconds
            logs.info(f"[Trainer] job={job_id} resuming at epoch {start_epoch} lr={lr:g}")
        else:
            lr = config.learning_rate if learning_rate is None else learning_rate
            estimator = build_estimator(spec, lr, config.batch_size, config.random_seed)
            best_estimator = None
            start_epoch = 1
            best_val = math.inf
            since_improvement = 0
            prior_seconds = 0.0

        max_epochs = config.max_epochs
        timer = Timer(offset=prior_seconds).start()
        elapsed = timer.elapsed

        def save_checkpoint(epoch: int) -> None:
            ckpt = TrainingCheckpoint(
                job_id=job_id,
                configuration_id=config.id,
                epoch=epoch,
                best_validation_loss=best_val,
                epochs_since_improvement=since_improvement,
                total_training_seconds=elapsed(),
                retry_attempt=attempt,
                current_learning_rate=lr,
                model_type=model_type,
                feature_count=feature_count,
                feature_names=list(feature_names),
                hidden_layer_sizes=list(config.hidden_layer_sizes),
                normalization_stats=norm_stats.to_dict(),
                created_at_utc=DateTimeUtils.utc_now(),
            )
            current_blob = dump_estimator(estimator, model_type, feature_count)
            best_blob = (
                dump_estimator(best_estimator, model_type, feature_count)
                if best_estimator is not None
                else None
            )
            store.save(ckpt, current_blob, best_blob)
            if on_checkpoint_saved is not None:
                on_checkpoint_saved(ckpt)

        # ---------------- epoch loop ----------------
        self.progress_log.start(f"train job={job_id}", total=max_epochs, unit="epochs")
        last_epoch = start_epoch - 1
        last_saved_epoch = resume_from.epoch if resume_from is not None else 0
        train_loss = val_loss = math.nan
        early_stopped = False

        try:
            for epoch in range(start_epoch, max_epochs + 1):
                token.raise_if_cancelled()
                if is_paused is not None and is_paused():
                    timer.pause()
                    while is_paused():
                        token.raise_if_cancelled()
                        token.wait(self.pause_poll_interval)
                    token.raise_if_cancelled()
                    timer.resume()

                try:
                    _fit_one_epoch(estimator, X_train, y_train, epoch)
                    train_loss = _mse(estimator, X_train, y_train)
                    val_loss = _mse(estimator, X_val, y_val) if has_val else train_loss
                except (ValueError, ArithmeticError, MemoryError) as e:
                    raise TrainerError(f"Epoch {epoch} failed: {e}") from e

                if not (math.isfinite(train_loss) and math.isfinite(val_loss)):
                    raise TrainerError(
                        f"Training diverged at epoch {epoch} (train={train_loss}, val={val_loss})"
                    )

                if val_loss < best_val:
                    best_val = val_loss
                    since_improvement = 0
                    best_estimator = copy.deepcopy(estimator)
                else:
                    since_improvement += 1

                last_epoch = epoch
                if progress is not None:
                    progress(
                        EpochProgress(
                            epoch=epoch,
                            total_epochs=max_epochs,
                            train_loss=train_loss,
                            validation_loss=val_loss,
                            best_validation_loss=best_val,
                            epochs_since_improvement=since_improvement,
                            learning_rate=lr,
                            elapsed_seconds=elapsed(),
                        )
                    )

                if store is not None and checkpoint_every > 0 and epoch % checkpoint_every == 0:
                    save_checkpoint(epoch)
                    last_saved_epoch = epoch

                if config.use_early_stopping and since_improvement >= config.early_stopping_patience:
                    early_stopped = True
                    logs.info(f"[Trainer] job={job_id} early stop at epoch {epoch} best_val={best_val:.6g}")
                    break

                # yield between epochs
                time.sleep(0)

            if last_epoch < start_epoch:
                # resumed past max_epochs: nothing left to fit
                train_loss = _mse(estimator, X_train, y_train)
                val_loss = _mse(estimator, X_val, y_val) if has_val else train_loss

            if store is not None and checkpoint_every > 0 and last_epoch > last_saved_epoch:
                save_checkpoint(last_epoch)
        finally:
            duration = timer.stop()

        self.progress_log.done(f"train job={job_id}")
        if best_estimator is None:
            best_estimator = estimator

        return TrainingResult(
            model=SklearnModel(best_estimator, model_type, feature_count),
            epochs_trained=last_epoch,
            final_train_loss=train_loss,
            final_validation_loss=val_loss,
            best_validation_loss=best_val if math.isfinite(best_val) else val_loss,
            early_stopped=early_stopped,
            duration_seconds=duration,
            learning_rate=lr,
        )

    # ------------------------------------------------------------------
    def evaluate(
        self,
        model: SklearnModel,
        samples: Sequence[TrainingSample],
        token: CancellationToken = NONE,
    ) -> EvaluationResult:
        token.raise_if_cancelled()
        X, y = to_arrays(samples)
        if len(X) == 0:
            return EvaluationResult(mse=0.0, rmse=0.0, mae=0.0, r_squared=0.0)
        predictions = model.predict_batch(X)
        mse = float(mean_squared_error(y, predictions))
        mae = float(mean_absolute_error(y, predictions))
        ss_res = float(np.sum((y - predictions) ** 2))
        ss_tot = float(np.sum((y - y.mean()) ** 2))
        r_squared = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0
        return EvaluationResult(
            mse=mse,
            rmse=math.sqrt(mse),
            mae=mae,
            r_squared=r_squared,
            predictions=predictions,
        )
