from .enums import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    TERMINAL_TASK_STATUSES,
    BackgroundTaskStatus,
    BackgroundTaskType,
    DatasetStatus,
    Exchange,
    ModelTestStatus,
    ModelType,
    ResourceType,
    TradeDirection,
    TradeSignal,
    TrainingJobStatus,
)
from .market import Kline, KlineInterval
from .trading import FeeSchedule, PerformanceRequirements, TradingEnvironmentConfig
from .backtest import BacktestMetrics, BacktestResult, EquityPoint, TradeRecord
from .training import (
    EvaluationSummary,
    RetryPolicy,
    TrainingConfiguration,
    TrainingJob,
    TrainingJobResult,
)
from .datasets import DatasetDefinition
from .resources import (
    ContainerStatus,
    HardwareInfo,
    QueueStatus,
    ResourceContainer,
    ResourceQueue,
    SlotHolder,
)
from .tasks import BackgroundTask, TaskProgress
from .testing import ModelTest, ModelTestResult, PredictionPoint
