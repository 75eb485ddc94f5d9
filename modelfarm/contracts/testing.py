# modelfarm/contracts/testing.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from modelfarm.utils.datetime_utils import DateTimeUtils

from .backtest import BacktestResult
from .enums import ModelTestStatus


class PredictionPoint(BaseModel):
    timestamp: datetime
    close_price: float
    predicted: float
    actual: float


class ModelTestResult(BaseModel):
    sample_count: int
    mse: float
    mae: float
    directional_accuracy: float
    backtest: BacktestResult
    predictions: List[PredictionPoint] = Field(default_factory=list)


class ModelTest(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    model_job_id: uuid.UUID
    dataset_id: uuid.UUID
    status: ModelTestStatus = ModelTestStatus.RUNNING
    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[ModelTestResult] = None
