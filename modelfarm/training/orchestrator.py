# modelfarm/training/orchestrator.py
"""
TrainingOrchestrator（FINAL）

One supervisor thread per job:

    Queued ─► WaitingForData ─► (queue slot) ─► Preprocessing ─► Training ─► Backtesting ─► Completed
                                                                    ▲              │
                                                                    └── attempt+1 ─┘

Rules:
- the supervisor thread is the only writer of epoch / loss fields
- user commands only flip status / is_paused, always via a conditional
  UPDATE keyed by (id, expected status)
- runtime state (token, pause flag, resume intent) lives in _runtime,
  never in the job record
- the queue slot is released in `finally`, whatever happened
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from modelfarm.backtest.engine import BacktestPoint, run_backtest
from modelfarm.checkpoint.model import TrainingCheckpoint
from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.config.orchestrator_config import OrchestratorConfig
from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    DatasetStatus,
    TrainingJobStatus,
)
from modelfarm.contracts.training import (
    EvaluationSummary,
    TrainingConfiguration,
    TrainingJob,
    TrainingJobResult,
)
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.observability.progress import ProgressThrottle
from modelfarm.persistence.repositories import Repositories
from modelfarm.resources.queues import ResourceQueueService
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import (
    Cancelled,
    CheckpointCorrupt,
    Conflict,
    DependencyUnavailable,
    InvalidArgument,
    ModelFarmError,
    NotFound,
    TrainerError,
)
from modelfarm.utils.logger import logs

from .preprocessing import PreparedData, preprocess, shuffled
from .trainer import EpochProgress, Trainer

S = TrainingJobStatus

USER_REASON = "user"
SHUTDOWN_REASON = "shutdown"
TIMEOUT_REASON = "timeout"
RETRY_REASON = "retry"

WAITING_STATES = frozenset({S.QUEUED, S.WAITING_FOR_DATA})
PAUSABLE_STATES = frozenset({S.QUEUED, S.WAITING_FOR_DATA, S.PREPROCESSING, S.TRAINING})


@dataclass
class _JobRuntime:
    token: CancellationToken = field(default_factory=CancellationToken)
    paused: bool = False
    resume: bool = False
    holds_slot: bool = False
    thread: Optional[threading.Thread] = None


class TrainingOrchestrator:
    def __init__(
        self,
        repos: Repositories,
        queues: ResourceQueueService,
        checkpoints: CheckpointStore,
        klines: KlineStore,
        trainer: Trainer,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.jobs = repos.jobs
        self.configurations = repos.configurations
        self.datasets = repos.datasets
        self.queues = queues
        self.checkpoints = checkpoints
        self.klines = klines
        self.trainer = trainer
        self.config = config or OrchestratorConfig()
        self.clock = clock

        self._lock = threading.RLock()
        self._runtime: Dict[uuid.UUID, _JobRuntime] = {}
        self._closed = False

    # ==================================================================
    # queries
    # ==================================================================
    def get_job(self, job_id: uuid.UUID) -> Optional[TrainingJob]:
        return self.jobs.get(job_id)

    def list_jobs(self, status: Optional[TrainingJobStatus] = None) -> List[TrainingJob]:
        return self.jobs.list(status)

    def jobs_for_configuration(self, configuration_id: uuid.UUID) -> List[TrainingJob]:
        return self.jobs.list_for_configuration(configuration_id)

    def is_running(self, job_id: uuid.UUID) -> bool:
        with self._lock:
            rt = self._runtime.get(job_id)
        return rt is not None and rt.thread is not None and rt.thread.is_alive()

    def active_job_ids(self) -> List[uuid.UUID]:
        with self._lock:
            return list(self._runtime)

    # ==================================================================
    # commands
    # ==================================================================
    def start_training(
        self,
        configuration_id: uuid.UUID,
        job_name: Optional[str] = None,
        queue_id: Optional[uuid.UUID] = None,
    ) -> TrainingJob:
        if self._closed:
            raise Conflict("Orchestrator is shutting down")
        config = self.configurations.get(configuration_id)
        if config is None:
            raise NotFound(f"Configuration {configuration_id} not found")

        if queue_id is not None:
            queue = self.queues.get(queue_id)
        else:
            queue = self.queues.get_default()
            if queue is None:
                raise DependencyUnavailable("No default resource queue is configured")

        now = self.clock()
        job = TrainingJob(
            name=job_name or f"{config.name} {now:%Y-%m-%d %H:%M:%S}",
            configuration_id=config.id,
            queue_id=queue.id,
            status=S.QUEUED,
            total_epochs=config.max_epochs,
            max_attempts=config.retry.max_attempts,
            current_learning_rate=config.learning_rate,
            message="Queued",
            created_at=now,
        )
        self.jobs.upsert(job)
        logs.info(f"[Orchestrator] job={job.id} created for configuration {config.name} on queue {queue.name}")
        self._spawn(job.id, resume=False)
        return job

    def cancel_job(self, job_id: uuid.UUID) -> bool:
        ok = self.jobs.transition(
            job_id,
            ACTIVE_JOB_STATUSES,
            S.CANCELLED,
            message="Cancelled by user",
            completed_at=self.clock(),
            is_paused=False,
            has_checkpoint=self.checkpoints.is_valid(job_id),
        )
        if not ok:
            return False
        with self._lock:
            rt = self._runtime.get(job_id)
        if rt is not None:
            rt.token.cancel(USER_REASON)
        logs.info(f"[Orchestrator] job={job_id} cancelled")
        return True

    def pause_job(self, job_id: uuid.UUID) -> bool:
        with self._lock:
            rt = self._runtime.get(job_id)
        if rt is None:
            return False
        if not self.jobs.update_where(job_id, PAUSABLE_STATES, is_paused=True, message="Paused"):
            return False
        rt.paused = True
        logs.info(f"[Orchestrator] job={job_id} paused")
        return True

    def resume_job(self, job_id: uuid.UUID) -> bool:
        with self._lock:
            rt = self._runtime.get(job_id)
        if rt is None:
            return False
        if not self.jobs.update_where(job_id, ACTIVE_JOB_STATUSES, is_paused=False, message="Resumed"):
            return False
        rt.paused = False
        logs.info(f"[Orchestrator] job={job_id} resumed")
        return True

    def retry_job(self, job_id: uuid.UUID) -> bool:
        """
        Terminal job → Queued from scratch. Any lingering worker is
        cancelled and joined before the checkpoint is removed.
        """
        job = self.jobs.get(job_id)
        if job is None or not job.is_terminal:
            return False
        config = self.configurations.get(job.configuration_id)
        if config is None:
            return False

        self._stop_worker(job_id, RETRY_REASON)
        self.checkpoints.delete(job_id)

        ok = self.jobs.transition(
            job_id,
            TERMINAL_JOB_STATUSES,
            S.QUEUED,
            current_epoch=0,
            total_epochs=config.max_epochs,
            training_loss=None,
            validation_loss=None,
            best_validation_loss=None,
            epochs_since_improvement=0,
            current_learning_rate=config.learning_rate,
            current_attempt=1,
            max_attempts=config.retry.max_attempts,
            is_paused=False,
            message="Queued for retry",
            error_message=None,
            started_at=None,
            completed_at=None,
            result=None,
            has_checkpoint=False,
            last_checkpoint_at=None,
            accumulated_training_seconds=0.0,
        )
        if not ok:
            return False
        logs.info(f"[Orchestrator] job={job_id} retry requested")
        self._spawn(job_id, resume=False)
        return True

    def resume_job_from_checkpoint(self, job_id: uuid.UUID) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not S.FAILED or not job.has_checkpoint:
            return False
        if not self.checkpoints.is_valid(job_id):
            self.jobs.update_where(
                job_id,
                {S.FAILED},
                has_checkpoint=False,
                message="Checkpoint is missing or corrupt; retry required",
            )
            return False

        self._stop_worker(job_id, RETRY_REASON)
        ok = self.jobs.transition(
            job_id,
            {S.FAILED},
            S.QUEUED,
            is_paused=False,
            message="Queued to resume from checkpoint",
            error_message=None,
            completed_at=None,
            result=None,
        )
        if not ok:
            return False
        logs.info(f"[Orchestrator] job={job_id} resume-from-checkpoint requested")
        self._spawn(job_id, resume=True)
        return True

    def shutdown(self, timeout: Optional[float] = None) -> int:
        """
        Cancel every active job ("Cancelled by shutdown") and join workers.
        """
        self._closed = True
        timeout = self.config.join_timeout if timeout is None else timeout
        with self._lock:
            runtimes = dict(self._runtime)
        for job_id, rt in runtimes.items():
            self.jobs.transition(
                job_id,
                ACTIVE_JOB_STATUSES,
                S.CANCELLED,
                message="Cancelled by shutdown",
                completed_at=self.clock(),
                is_paused=False,
                has_checkpoint=self.checkpoints.is_valid(job_id),
            )
            rt.token.cancel(SHUTDOWN_REASON)
        for rt in runtimes.values():
            if rt.thread is not None:
                rt.thread.join(timeout)
        if runtimes:
            logs.info(f"[Orchestrator] shutdown cancelled {len(runtimes)} job(s)")
        return len(runtimes)

    # ==================================================================
    # worker management
    # ==================================================================
    def _spawn(self, job_id: uuid.UUID, resume: bool) -> None:
        rt = _JobRuntime(resume=resume)
        rt.thread = threading.Thread(
            target=self._supervise,
            args=(job_id, rt),
            name=f"job-{job_id.hex[:8]}",
            daemon=True,
        )
        with self._lock:
            self._runtime[job_id] = rt
        rt.thread.start()

    def _stop_worker(self, job_id: uuid.UUID, reason: str) -> None:
        with self._lock:
            rt = self._runtime.get(job_id)
        if rt is None:
            return
        rt.token.cancel(reason)
        if rt.thread is not None and rt.thread is not threading.current_thread():
            rt.thread.join(self.config.join_timeout)

    def wait(self, job_id: uuid.UUID, timeout: Optional[float] = None) -> bool:
        """
        Join the job's worker; True when it is no longer running.
        """
        with self._lock:
            rt = self._runtime.get(job_id)
        if rt is None or rt.thread is None:
            return True
        rt.thread.join(timeout)
        return not rt.thread.is_alive()

    def _supervise(self, job_id: uuid.UUID, rt: _JobRuntime) -> None:
        queue_id = None
        try:
            job = self.jobs.get(job_id)
            if job is None:
                return
            queue_id = job.queue_id
            self._run_job(job, rt)
        except Cancelled as e:
            self._on_cancelled(job_id, e.reason or rt.token.reason)
        except Conflict as e:
            # a user command moved the job on; nothing to record
            logs.info(f"[Orchestrator] job={job_id} stopped: {e}")
        except TrainerError as e:
            self._fail(job_id, f"Trainer error: {e}")
        except ModelFarmError as e:
            self._fail(job_id, str(e))
        except Exception as e:
            logs.exception(f"[Orchestrator] job={job_id} crashed: {e}")
            self._fail(job_id, f"Trainer error: {type(e).__name__}: {e}")
        finally:
            if rt.token.reason != RETRY_REASON:
                self._sync_checkpoint_flag(job_id)
            rt.token.dispose()
            if rt.holds_slot and queue_id is not None:
                self.queues.release(queue_id, job_id)
                rt.holds_slot = False
            with self._lock:
                if self._runtime.get(job_id) is rt:
                    del self._runtime[job_id]

    def _sync_checkpoint_flag(self, job_id: uuid.UUID) -> None:
        """
        Worker has exited: a checkpoint written after cancel/fail must still
        show up in has_checkpoint.
        """
        job = self.jobs.get(job_id)
        if job is None or not job.is_terminal:
            return
        if self.jobs.set_checkpoint_flag(job_id, self.checkpoints.is_valid(job_id)):
            logs.info(f"[Orchestrator] job={job_id} has_checkpoint resynced after worker exit")

    def _on_cancelled(self, job_id: uuid.UUID, reason: Optional[str]) -> None:
        if reason == TIMEOUT_REASON:
            job = self.jobs.get(job_id)
            limit = None
            if job is not None and job.queue_id is not None:
                queue = self.queues.repo.get(job.queue_id)
                limit = queue.max_job_duration_seconds if queue is not None else None
            detail = f" of {limit:g}s" if limit else ""
            self._fail(job_id, f"Job exceeded maximum duration{detail}")
        elif reason == RETRY_REASON:
            return
        else:
            message = "Cancelled by shutdown" if reason == SHUTDOWN_REASON else "Cancelled by user"
            self.jobs.transition(
                job_id,
                ACTIVE_JOB_STATUSES,
                S.CANCELLED,
                message=message,
                completed_at=self.clock(),
                is_paused=False,
            )
        logs.info(f"[Orchestrator] job={job_id} stopped (reason={reason})")

    def _fail(self, job_id: uuid.UUID, error: str) -> None:
        resumable = self.checkpoints.is_valid(job_id)
        message = f"Failed: {error}"
        if resumable:
            message += " (resumable from checkpoint)"
        ok = self.jobs.transition(
            job_id,
            ACTIVE_JOB_STATUSES,
            S.FAILED,
            message=message,
            error_message=error,
            completed_at=self.clock(),
            is_paused=False,
            has_checkpoint=resumable,
        )
        if ok:
            logs.error(f"[Orchestrator] job={job_id} failed: {error}")

    def _advance(
        self,
        job_id: uuid.UUID,
        rt: _JobRuntime,
        expected: Iterable[TrainingJobStatus],
        new_status: TrainingJobStatus,
        **fields,
    ) -> None:
        if self.jobs.transition(job_id, expected, new_status, **fields):
            return
        rt.token.raise_if_cancelled()
        raise Conflict(f"Job {job_id} is no longer in {sorted(s.name for s in expected)}")

    # ==================================================================
    # pipeline
    # ==================================================================
    def _run_job(self, job: TrainingJob, rt: _JobRuntime) -> None:
        job_id = job.id
        config = self.configurations.get(job.configuration_id)
        if config is None:
            raise NotFound(f"Configuration {job.configuration_id} not found")
        if job.queue_id is None:
            raise InvalidArgument(f"Job {job_id} has no queue")
        queue = self.queues.get(job.queue_id)

        if queue.max_job_duration_seconds:
            rt.token.cancel_after(queue.max_job_duration_seconds, TIMEOUT_REASON)

        # ---------------- Queued / WaitingForData ----------------
        dataset = self._await_dataset(job_id, config, rt)
        self.jobs.update_where(job_id, WAITING_STATES, message=f"Waiting for a slot in queue {queue.name}")
        self.queues.acquire(queue.id, job_id, token=rt.token, can_acquire=lambda: not rt.paused)
        rt.holds_slot = True

        # ---------------- Preprocessing ----------------
        self._advance(
            job_id,
            rt,
            WAITING_STATES,
            S.PREPROCESSING,
            started_at=job.started_at or self.clock(),
            message="Preprocessing data",
        )
        if not self.klines.exists(dataset.id):
            raise DependencyUnavailable(f"Candle data for dataset {dataset.name} is missing")
        klines = self.klines.read(dataset.id)
        prepared = preprocess(klines, config)
        del klines

        resume_from: Optional[TrainingCheckpoint] = None
        if rt.resume:
            resume_from = self.checkpoints.load(job_id)
            if resume_from is None:
                raise CheckpointCorrupt(f"Checkpoint for job {job_id} is missing")

        self._train_attempts(job, config, dataset, prepared, resume_from, rt)

    def _await_dataset(
        self,
        job_id: uuid.UUID,
        config: TrainingConfiguration,
        rt: _JobRuntime,
    ) -> DatasetDefinition:
        while True:
            rt.token.raise_if_cancelled()
            dataset = self.datasets.get(config.dataset_id)
            if dataset is None:
                raise DependencyUnavailable(f"Dataset {config.dataset_id} not found")
            if dataset.status is DatasetStatus.READY:
                return dataset
            if dataset.status is DatasetStatus.FAILED:
                detail = f": {dataset.error_message}" if dataset.error_message else ""
                raise DependencyUnavailable(f"Dataset {dataset.name} failed{detail}")
            self.jobs.transition(
                job_id,
                {S.QUEUED},
                S.WAITING_FOR_DATA,
                message=f"Waiting for dataset {dataset.name}",
            )
            rt.token.wait(self.config.dataset_poll_interval)

    def _train_attempts(
        self,
        job: TrainingJob,
        config: TrainingConfiguration,
        dataset: DatasetDefinition,
        prepared: PreparedData,
        resume_from: Optional[TrainingCheckpoint],
        rt: _JobRuntime,
    ) -> None:
        job_id = job.id
        retry = config.retry
        max_attempts = retry.max_attempts
        attempt = resume_from.retry_attempt if resume_from is not None else max(1, job.current_attempt)
        store = self.checkpoints if config.save_checkpoints else None

        while True:
            rt.token.raise_if_cancelled()

            if resume_from is not None:
                lr = resume_from.current_learning_rate
                start_epoch = resume_from.epoch
            else:
                lr = retry.learning_rate_for(config.learning_rate, attempt)
                start_epoch = 0

            train_set = prepared.train
            if resume_from is None and attempt > 1 and retry.shuffle_on_retry:
                train_set = shuffled(train_set, seed=attempt)

            self._advance(
                job_id,
                rt,
                {S.PREPROCESSING, S.BACKTESTING},
                S.TRAINING,
                current_attempt=attempt,
                max_attempts=max_attempts,
                current_epoch=start_epoch,
                total_epochs=config.max_epochs,
                current_learning_rate=lr,
                epochs_since_improvement=resume_from.epochs_since_improvement if resume_from else 0,
                best_validation_loss=resume_from.best_validation_loss if resume_from else None,
                message=f"Training attempt {attempt}/{max_attempts}",
            )
            logs.info(
                f"[Orchestrator] job={job_id} attempt {attempt}/{max_attempts} lr={lr:g} "
                f"start_epoch={start_epoch + 1}"
            )

            throttle = ProgressThrottle(
                lambda p: self._persist_progress(job_id, p),
                interval=self.config.progress_interval,
            )
            latest: list[EpochProgress] = []

            def on_progress(p: EpochProgress) -> None:
                latest[:] = [p]
                throttle.report(p)

            result = self.trainer.train_with_checkpoints(
                train_set,
                prepared.validation,
                config,
                store=store,
                job_id=job_id,
                norm_stats=prepared.norm_stats,
                feature_names=prepared.feature_names,
                checkpoint_every=config.checkpoint_every,
                resume_from=resume_from,
                learning_rate=lr,
                attempt=attempt,
                progress=on_progress,
                on_checkpoint_saved=lambda c: self._on_checkpoint(job_id, c),
                is_paused=lambda: rt.paused,
                token=rt.token,
            )
            resume_from = None
            if latest:
                throttle.report(latest[0], force=True)

            # ---------------- Backtesting ----------------
            self._advance(job_id, rt, {S.TRAINING}, S.BACKTESTING, message="Evaluating and backtesting")
            try:
                evaluation = self.trainer.evaluate(result.model, prepared.test, rt.token)
            finally:
                result.model.dispose()
            points = [
                BacktestPoint(
                    timestamp=s.timestamp,
                    close_price=s.close_price,
                    predicted_return=float(pred),
                    actual_return=s.target,
                )
                for s, pred in zip(prepared.test, evaluation.predictions)
            ]
            backtest = run_backtest(points, config.trading_environment, dataset.interval.periods_per_year)
            meets, failures = config.performance_requirements.check(backtest.metrics)

            job_result = TrainingJobResult(
                epochs_trained=result.epochs_trained,
                final_train_loss=result.final_train_loss,
                final_validation_loss=result.final_validation_loss,
                best_validation_loss=result.best_validation_loss,
                early_stopped=result.early_stopped,
                training_duration_seconds=result.duration_seconds,
                attempts=attempt,
                final_learning_rate=result.learning_rate,
                feature_names=prepared.feature_names,
                evaluation=EvaluationSummary(
                    mse=evaluation.mse,
                    rmse=evaluation.rmse,
                    mae=evaluation.mae,
                    r_squared=evaluation.r_squared,
                    sample_count=evaluation.sample_count,
                ),
                backtest=backtest.metrics,
                meets_requirements=meets,
                requirement_failures=failures,
            )

            if meets or attempt >= max_attempts:
                if meets:
                    message = f"Completed: requirements met on attempt {attempt}"
                else:
                    message = f"Completed: requirements not met after {attempt} attempt(s)"
                self._advance(
                    job_id,
                    rt,
                    {S.BACKTESTING},
                    S.COMPLETED,
                    result=job_result,
                    message=message,
                    completed_at=self.clock(),
                    is_paused=False,
                    accumulated_training_seconds=result.duration_seconds,
                    has_checkpoint=self.checkpoints.is_valid(job_id),
                )
                logs.info(
                    f"[Orchestrator] job={job_id} completed attempts={attempt} meets={meets} "
                    f"sharpe={backtest.metrics.sharpe_ratio:.3f} trades={backtest.metrics.total_trades}"
                )
                return

            # next attempt starts from scratch
            self.checkpoints.delete(job_id)
            self.jobs.update_where(
                job_id,
                {S.BACKTESTING},
                result=job_result,
                has_checkpoint=False,
                last_checkpoint_at=None,
                message=f"Attempt {attempt} missed requirements ({'; '.join(failures)}); retrying",
            )
            logs.info(f"[Orchestrator] job={job_id} attempt {attempt} missed requirements: {failures}")
            attempt += 1

    # ==================================================================
    # sinks
    # ==================================================================
    def _persist_progress(self, job_id: uuid.UUID, p: EpochProgress) -> None:
        self.jobs.update_where(
            job_id,
            {S.TRAINING},
            current_epoch=p.epoch,
            training_loss=p.train_loss,
            validation_loss=p.validation_loss,
            best_validation_loss=p.best_validation_loss,
            epochs_since_improvement=p.epochs_since_improvement,
            current_learning_rate=p.learning_rate,
            accumulated_training_seconds=p.elapsed_seconds,
            message=f"Epoch {p.epoch}/{p.total_epochs}",
        )

    def _on_checkpoint(self, job_id: uuid.UUID, ckpt: TrainingCheckpoint) -> None:
        self.jobs.update_where(
            job_id,
            ACTIVE_JOB_STATUSES,
            has_checkpoint=True,
            last_checkpoint_at=ckpt.created_at_utc,
            accumulated_training_seconds=ckpt.total_training_seconds,
        )
