# modelfarm/training/trainer.py
"""
Trainer collaborator contract (FINAL / FROZEN)

The orchestrator only talks to a Trainer through this module:

    train(...)                  → TrainingResult
    train_with_checkpoints(...) → TrainingResult   (resume / pause / cadence)
    evaluate(model, samples)    → EvaluationResult
    load_model(path | bytes)    → TrainedModel

TrainedModel is opaque: predict / predict_batch / save / dispose.
ModelSpec is the tagged variant a Configuration's model_type resolves to.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from modelfarm.checkpoint.model import TrainingCheckpoint
from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.contracts.enums import ModelType
from modelfarm.contracts.training import TrainingConfiguration
from modelfarm.features.engineering import TrainingSample
from modelfarm.features.normalization import NormalizationStats
from modelfarm.utils.cancellation import CancellationToken, NONE


# ============================================================
# ModelSpec (tagged variant)
# ============================================================
@dataclass(frozen=True)
class LinearRegressionSpec:
    kind = ModelType.LINEAR_REGRESSION


@dataclass(frozen=True)
class MLPSpec:
    hidden_layer_sizes: Tuple[int, ...]
    dropout_rate: float = 0.0
    kind = ModelType.MLP


@dataclass(frozen=True)
class GradientBoostingSpec:
    max_depth: int = 3
    kind = ModelType.GRADIENT_BOOSTING


ModelSpec = Union[LinearRegressionSpec, MLPSpec, GradientBoostingSpec]


def model_spec_for(config: TrainingConfiguration) -> ModelSpec:
    if config.model_type is ModelType.LINEAR_REGRESSION:
        return LinearRegressionSpec()
    if config.model_type is ModelType.MLP:
        return MLPSpec(tuple(config.hidden_layer_sizes), config.dropout_rate)
    if config.model_type is ModelType.GRADIENT_BOOSTING:
        return GradientBoostingSpec()
    raise ValueError(f"Unsupported model type {config.model_type!r}")


# ============================================================
# Results
# ============================================================
@dataclass(frozen=True)
class EpochProgress:
    epoch: int
    total_epochs: int
    train_loss: float
    validation_loss: float
    best_validation_loss: float
    epochs_since_improvement: int
    learning_rate: float
    elapsed_seconds: float


@dataclass
class TrainingResult:
    model: "TrainedModel"
    epochs_trained: int
    final_train_loss: float
    final_validation_loss: float
    best_validation_loss: float
    early_stopped: bool
    duration_seconds: float
    learning_rate: float


@dataclass
class EvaluationResult:
    mse: float
    rmse: float
    mae: float
    r_squared: float
    predictions: np.ndarray = field(default_factory=lambda: np.empty(0))

    @property
    def sample_count(self) -> int:
        return int(len(self.predictions))


class TrainedModel(Protocol):
    model_type: ModelType
    feature_count: int

    def predict(self, features: Sequence[float]) -> float: ...

    def predict_batch(self, features: np.ndarray) -> np.ndarray: ...

    def save(self, path) -> None: ...

    def dispose(self) -> None: ...


ProgressSink = Callable[[EpochProgress], None]
CheckpointSink = Callable[[TrainingCheckpoint], None]


class Trainer(Protocol):
    weights_ext: str

    def train(
        self,
        train: Sequence[TrainingSample],
        validation: Sequence[TrainingSample],
        config: TrainingConfiguration,
        progress: Optional[ProgressSink] = None,
        token: CancellationToken = NONE,
        learning_rate: Optional[float] = None,
    ) -> TrainingResult: ...

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
    ) -> TrainingResult: ...

    def evaluate(
        self,
        model: TrainedModel,
        samples: Sequence[TrainingSample],
        token: CancellationToken = NONE,
    ) -> EvaluationResult: ...

    def load_model(self, source) -> TrainedModel: ...
