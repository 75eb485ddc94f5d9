from .orchestrator import TrainingOrchestrator
from .preprocessing import PreparedData, preprocess
from .reconciler import TrainingJobReconciler
from .sklearn_trainer import SklearnModel, SklearnTrainer, load_model
from .trainer import (
    EpochProgress,
    EvaluationResult,
    GradientBoostingSpec,
    LinearRegressionSpec,
    MLPSpec,
    ModelSpec,
    Trainer,
    TrainingResult,
    model_spec_for,
)
