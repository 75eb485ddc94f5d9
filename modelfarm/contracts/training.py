# modelfarm/contracts/training.py
"""
Training configuration / job contracts（FINAL）

- TrainingConfiguration : immutable-after-create hyperparameter bundle
- TrainingJob           : one run of a configuration
- TrainingJobResult     : what a finished job reports
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from modelfarm.utils.datetime_utils import DateTimeUtils

from .backtest import BacktestMetrics
from .enums import ModelType, TrainingJobStatus
from .trading import PerformanceRequirements, TradingEnvironmentConfig


class RetryPolicy(BaseModel):
    retry_until_success: bool = False
    max_retry_attempts: int = Field(default=10, ge=1)
    shuffle_on_retry: bool = False
    scale_learning_rate_on_retry: bool = False
    learning_rate_retry_scale: float = Field(default=0.5, gt=0, le=1)

    @property
    def max_attempts(self) -> int:
        return self.max_retry_attempts if self.retry_until_success else 1

    def learning_rate_for(self, base: float, attempt: int) -> float:
        """
        attempt is 1-based; the scale compounds once per retry.
        """
        if not self.scale_learning_rate_on_retry or attempt <= 1:
            return base
        return base * self.learning_rate_retry_scale ** (attempt - 1)


# fields that change tensor shapes / model family
SHAPE_FIELDS = ("model_type", "max_lags", "forecast_horizon", "hidden_layer_sizes")


class TrainingConfiguration(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    dataset_id: uuid.UUID
    model_type: ModelType = ModelType.MLP

    # architecture
    max_lags: int = Field(default=4, ge=1)
    forecast_horizon: int = Field(default=1, ge=1)
    hidden_layer_sizes: List[int] = Field(default_factory=lambda: [64, 32])
    dropout_rate: float = Field(default=0.2, ge=0, lt=1)

    # hyperparameters
    learning_rate: float = Field(default=0.001, gt=0)
    batch_size: int = Field(default=32, ge=1)
    max_epochs: int = Field(default=10_000, ge=1)
    early_stopping_patience: int = Field(default=50, ge=1)
    use_early_stopping: bool = True
    validation_split: float = Field(default=0.2, ge=0, lt=1)
    test_split: float = Field(default=0.1, ge=0, lt=1)
    random_seed: int = 42

    # checkpoints
    save_checkpoints: bool = True
    checkpoint_interval_epochs: int = Field(default=50, ge=0)

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    performance_requirements: PerformanceRequirements = Field(default_factory=PerformanceRequirements)
    trading_environment: TradingEnvironmentConfig = Field(default_factory=TradingEnvironmentConfig)

    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    updated_at: Optional[datetime] = None

    @field_validator("hidden_layer_sizes")
    @classmethod
    def _positive_layers(cls, v: List[int]) -> List[int]:
        if any(n < 1 for n in v):
            raise ValueError("hidden_layer_sizes must all be >= 1")
        return v

    @model_validator(mode="after")
    def _splits_leave_training_data(self) -> "TrainingConfiguration":
        if self.validation_split + self.test_split >= 1:
            raise ValueError("validation_split + test_split must be < 1")
        return self

    @property
    def checkpoint_every(self) -> int:
        return self.checkpoint_interval_epochs if self.save_checkpoints else 0


class EvaluationSummary(BaseModel):
    mse: float
    rmse: float
    mae: float
    r_squared: float
    sample_count: int


class TrainingJobResult(BaseModel):
    epochs_trained: int
    final_train_loss: float
    final_validation_loss: float
    best_validation_loss: float
    early_stopped: bool
    training_duration_seconds: float
    attempts: int
    final_learning_rate: float
    feature_names: List[str] = Field(default_factory=list)
    evaluation: Optional[EvaluationSummary] = None
    backtest: Optional[BacktestMetrics] = None
    meets_requirements: bool = False
    requirement_failures: List[str] = Field(default_factory=list)


class TrainingJob(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    configuration_id: uuid.UUID
    queue_id: Optional[uuid.UUID] = None
    status: TrainingJobStatus = TrainingJobStatus.QUEUED

    current_epoch: int = 0
    total_epochs: int = 0
    training_loss: Optional[float] = None
    validation_loss: Optional[float] = None
    best_validation_loss: Optional[float] = None
    epochs_since_improvement: int = 0
    current_learning_rate: Optional[float] = None

    current_attempt: int = 1
    max_attempts: int = 1

    is_paused: bool = False
    message: str = ""
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    result: Optional[TrainingJobResult] = None

    has_checkpoint: bool = False
    last_checkpoint_at: Optional[datetime] = None
    accumulated_training_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
