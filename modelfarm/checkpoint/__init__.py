from .model import TrainingCheckpoint
from .store import CheckpointStore
