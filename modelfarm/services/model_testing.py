# modelfarm/services/model_testing.py
"""
Out-of-sample evaluation of a completed job's best model on any dataset.

Same feature pipeline as training, same normalisation stats (taken from
the checkpoint, never refit), then metrics + full backtest.
"""
from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import numpy as np

from modelfarm.backtest.engine import BacktestPoint, run_backtest
from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import DatasetStatus, ModelTestStatus, TrainingJobStatus
from modelfarm.contracts.testing import ModelTest, ModelTestResult, PredictionPoint
from modelfarm.contracts.training import TrainingConfiguration, TrainingJob
from modelfarm.features.engineering import prepare_training_data, to_arrays
from modelfarm.features.normalization import apply_normalization
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.persistence.repositories import Repositories
from modelfarm.training.trainer import Trainer
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import InvalidArgument, NotFound
from modelfarm.utils.logger import logs

HEAD_TAIL_PREDICTIONS = 250


def directional_accuracy(predicted: np.ndarray, actual: np.ndarray) -> float:
    if len(predicted) == 0:
        return 0.0
    return float(np.mean(np.sign(predicted) == np.sign(actual)))


def limit_predictions(points: List[PredictionPoint], keep: int = HEAD_TAIL_PREDICTIONS) -> List[PredictionPoint]:
    if len(points) <= 2 * keep:
        return points
    return points[:keep] + points[-keep:]


class ModelTestService:
    def __init__(
        self,
        repos: Repositories,
        checkpoints: CheckpointStore,
        klines: KlineStore,
        trainer: Trainer,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.repo = repos.model_tests
        self.jobs = repos.jobs
        self.configurations = repos.configurations
        self.datasets = repos.datasets
        self.checkpoints = checkpoints
        self.klines = klines
        self.trainer = trainer
        self.clock = clock
        self._threads: dict[uuid.UUID, threading.Thread] = {}

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get(self, test_id: uuid.UUID) -> ModelTest:
        test = self.repo.get(test_id)
        if test is None:
            raise NotFound(f"Model test {test_id} not found")
        return test

    def list(self, status: Optional[ModelTestStatus] = None) -> List[ModelTest]:
        return self.repo.list(status)

    def delete(self, test_id: uuid.UUID) -> bool:
        return self.repo.delete(test_id)

    def available_models(self) -> List[TrainingJob]:
        """
        Completed jobs whose checkpoint can still be loaded.
        """
        return [
            j for j in self.jobs.list(TrainingJobStatus.COMPLETED)
            if self.checkpoints.is_valid(j.id)
        ]

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------
    def run_test(self, job_id: uuid.UUID, dataset_id: uuid.UUID) -> ModelTest:
        job, config, dataset = self._validate(job_id, dataset_id)
        test = self._create_record(job_id, dataset_id)
        return self._execute(test, job, config, dataset)

    def start_test(self, job_id: uuid.UUID, dataset_id: uuid.UUID) -> ModelTest:
        job, config, dataset = self._validate(job_id, dataset_id)
        test = self._create_record(job_id, dataset_id)
        thread = threading.Thread(
            target=self._execute,
            args=(test, job, config, dataset),
            name=f"model-test-{test.id.hex[:8]}",
            daemon=True,
        )
        self._threads[test.id] = thread
        thread.start()
        return test

    def wait(self, test_id: uuid.UUID, timeout: Optional[float] = None) -> None:
        thread = self._threads.get(test_id)
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------
    def _validate(self, job_id: uuid.UUID, dataset_id: uuid.UUID):
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFound(f"Training job {job_id} not found")
        if job.status is not TrainingJobStatus.COMPLETED:
            raise InvalidArgument(f"Training job {job.name} is not completed")
        if not self.checkpoints.is_valid(job_id):
            raise InvalidArgument(f"Training job {job.name} has no usable checkpoint")
        config = self.configurations.get(job.configuration_id)
        if config is None:
            raise NotFound(f"Configuration {job.configuration_id} not found")
        dataset = self.datasets.get(dataset_id)
        if dataset is None:
            raise NotFound(f"Dataset {dataset_id} not found")
        if dataset.status is not DatasetStatus.READY:
            raise InvalidArgument(f"Dataset {dataset.name} is not ready ({dataset.status.name})")
        return job, config, dataset

    def _create_record(self, job_id: uuid.UUID, dataset_id: uuid.UUID) -> ModelTest:
        test = ModelTest(model_job_id=job_id, dataset_id=dataset_id, created_at=self.clock())
        self.repo.upsert(test)
        return test

    def _execute(
        self,
        test: ModelTest,
        job: TrainingJob,
        config: TrainingConfiguration,
        dataset: DatasetDefinition,
    ) -> ModelTest:
        try:
            result = self._evaluate(job, config, dataset)
            test = test.model_copy(
                update={"status": ModelTestStatus.COMPLETED, "completed_at": self.clock(), "result": result}
            )
            logs.info(
                f"[ModelTest] {test.id} job={job.name} dataset={dataset.name} "
                f"samples={result.sample_count} mse={result.mse:.6g} dir_acc={result.directional_accuracy:.3f}"
            )
        except Exception as e:
            logs.exception(f"[ModelTest] {test.id} failed: {e}")
            test = test.model_copy(
                update={"status": ModelTestStatus.FAILED, "completed_at": self.clock(), "error_message": str(e)}
            )
        self.repo.upsert(test)
        return test

    def _evaluate(
        self,
        job: TrainingJob,
        config: TrainingConfiguration,
        dataset: DatasetDefinition,
    ) -> ModelTestResult:
        ckpt = self.checkpoints.load(job.id)
        if ckpt is None:
            raise InvalidArgument(f"Checkpoint for job {job.name} is missing")
        model = self.trainer.load_model(self.checkpoints.read_weights(job.id, best=True))
        try:
            klines = self.klines.read(dataset.id) if self.klines.exists(dataset.id) else []
            if not klines:
                raise InvalidArgument(f"Dataset {dataset.name} has no data")

            stream = prepare_training_data(klines, config.max_lags, config.forecast_horizon)
            samples = apply_normalization(list(stream), ckpt.norm_stats())
            X, y = to_arrays(samples)
            predicted = model.predict_batch(X)
        finally:
            model.dispose()

        errors = predicted - y
        mse = float(np.mean(errors ** 2)) if len(y) else 0.0
        mae = float(np.mean(np.abs(errors))) if len(y) else 0.0

        points = [
            BacktestPoint(
                timestamp=s.timestamp,
                close_price=s.close_price,
                predicted_return=float(p),
                actual_return=s.target,
            )
            for s, p in zip(samples, predicted)
        ]
        backtest = run_backtest(points, config.trading_environment, dataset.interval.periods_per_year)

        predictions = [
            PredictionPoint(
                timestamp=s.timestamp,
                close_price=s.close_price,
                predicted=float(p),
                actual=s.target,
            )
            for s, p in zip(samples, predicted)
        ]
        return ModelTestResult(
            sample_count=len(samples),
            mse=mse,
            mae=mae,
            directional_accuracy=directional_accuracy(predicted, y),
            backtest=backtest,
            predictions=limit_predictions(predictions),
        )
