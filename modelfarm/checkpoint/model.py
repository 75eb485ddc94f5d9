# modelfarm/checkpoint/model.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from modelfarm.contracts.enums import ModelType
from modelfarm.features.normalization import NormalizationStats
from modelfarm.utils.datetime_utils import DateTimeUtils


class TrainingCheckpoint(BaseModel):
    """
    checkpoint.json sidecar（schema FROZEN）

    Everything needed to rebuild the trainer state at epoch + 1.
    """

    job_id: uuid.UUID
    configuration_id: uuid.UUID
    epoch: int = Field(ge=0)
    best_validation_loss: float
    epochs_since_improvement: int = 0
    total_training_seconds: float = 0.0
    retry_attempt: int = 1
    current_learning_rate: float
    model_type: ModelType
    feature_count: int
    feature_names: List[str] = Field(default_factory=list)
    hidden_layer_sizes: List[int] = Field(default_factory=list)
    normalization_stats: dict = Field(default_factory=lambda: {"means": [], "stds": []})
    created_at_utc: datetime = Field(default_factory=DateTimeUtils.utc_now)
    model_weights_file: Optional[str] = None
    best_model_weights_file: Optional[str] = None

    def norm_stats(self) -> NormalizationStats:
        return NormalizationStats.from_dict(self.normalization_stats)
