# modelfarm/control_plane.py
"""
ControlPlane（FINAL）

Owns every long-lived object of one process. Start order matters:

    0. leftover *.tmp files removed
    1. default container / queue        (before any admission)
    2. job reconciliation               (before any job thread)
    3. task manager start               (task startup reconciliation)
    4. dataset recovery                 (needs the loaded task table)
    5. task processor start
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from modelfarm.checkpoint.store import CheckpointStore
from modelfarm.config.app_config import AppConfig
from modelfarm.contracts.resources import HardwareInfo
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.market_data.sources import CsvKlineSource, KlineSource
from modelfarm.persistence.database import Database
from modelfarm.persistence.repositories import Repositories
from modelfarm.resources.containers import ResourceContainerService
from modelfarm.resources.hardware import detect_hardware
from modelfarm.resources.queues import ResourceQueueService
from modelfarm.services.configurations import ConfigurationService
from modelfarm.services.dataset_recovery import DatasetRecoveryService
from modelfarm.services.datasets import DatasetService
from modelfarm.services.model_testing import ModelTestService
from modelfarm.tasks.handlers.base import HandlerRegistry
from modelfarm.tasks.handlers.ingestion import DataIngestionTaskHandler
from modelfarm.tasks.manager import BackgroundTaskManager
from modelfarm.tasks.processor import TaskProcessor
from modelfarm.training.orchestrator import TrainingOrchestrator
from modelfarm.training.reconciler import TrainingJobReconciler
from modelfarm.training.sklearn_trainer import SklearnTrainer
from modelfarm.training.trainer import Trainer
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.filesystem import FileSystem
from modelfarm.utils.logger import logs


class ControlPlane:
    def __init__(
        self,
        config: AppConfig | None = None,
        source: Optional[KlineSource] = None,
        trainer: Optional[Trainer] = None,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
    ):
        self.config = config or AppConfig()
        storage = self.config.storage
        FileSystem.ensure_dir(storage.base_path)

        self.db = Database(storage.database_path)
        self.repos = Repositories.open(self.db)

        self.trainer = trainer or SklearnTrainer(
            pause_poll_interval=self.config.orchestrator.pause_poll_interval
        )
        self.checkpoints = CheckpointStore(storage.checkpoint_root, weights_ext=self.trainer.weights_ext)
        self.klines = KlineStore(storage.kline_root)
        self.source = source or CsvKlineSource(storage.base_path / "sources")

        # resources
        self.containers = ResourceContainerService(self.repos.containers, self.repos.queues)
        self.queues = ResourceQueueService(
            self.repos.queues,
            self.containers,
            poll_interval=self.config.orchestrator.queue_poll_interval,
        )

        # background tasks
        self.task_manager = BackgroundTaskManager(self.repos.tasks, self.config.dispatcher, clock=clock)
        self.handlers = HandlerRegistry()
        self.handlers.register(DataIngestionTaskHandler(self.repos.datasets, self.klines, self.source, clock=clock))
        self.task_processor = TaskProcessor(self.task_manager, self.handlers)

        # services
        self.configurations = ConfigurationService(
            self.repos.configurations, self.repos.jobs, self.repos.datasets, clock=clock
        )
        self.datasets = DatasetService(
            self.repos.datasets,
            self.repos.configurations,
            self.repos.jobs,
            self.task_manager,
            self.klines,
            clock=clock,
        )
        self.dataset_recovery = DatasetRecoveryService(self.datasets)
        self.model_tests = ModelTestService(self.repos, self.checkpoints, self.klines, self.trainer, clock=clock)

        # training
        self.orchestrator = TrainingOrchestrator(
            self.repos,
            self.queues,
            self.checkpoints,
            self.klines,
            self.trainer,
            config=self.config.orchestrator,
            clock=clock,
        )
        self.reconciler = TrainingJobReconciler(self.repos.jobs, self.checkpoints, clock=clock)

        self.hardware: Optional[HardwareInfo] = None
        self._started = False

    # ------------------------------------------------------------------
    @logs.catch(msg="control plane failed to start")
    def start(self, hardware: Optional[HardwareInfo] = None) -> "ControlPlane":
        if self._started:
            return self
        self.hardware = hardware or detect_hardware()
        # interrupted atomic writes
        for root in (self.config.storage.checkpoint_root, self.config.storage.kline_root):
            FileSystem.clean_temp_files(root)
        self.queues.ensure_default(self.hardware)
        self.reconciler.reconcile()
        self.task_manager.start()
        self.dataset_recovery.recover()
        self.task_processor.start()
        self._started = True
        logs.info(
            f"[ControlPlane] started base_dir={self.config.storage.base_dir} "
            f"cpu={self.hardware.cpu_count} gpu={self.hardware.gpu_count}"
        )
        return self

    def stop(self) -> None:
        if not self._started:
            self.db.close()
            return
        self.orchestrator.shutdown()
        self.task_processor.stop()
        self.task_manager.stop()
        self.db.close()
        self._started = False
        logs.info("[ControlPlane] stopped")

    def __enter__(self) -> "ControlPlane":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
