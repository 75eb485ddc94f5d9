# modelfarm/utils/errors.py
class ModelFarmError(RuntimeError):
    """
    Base class of every error the control plane raises on purpose.
    """


class NotFound(ModelFarmError):
    """
    Id not present. Commands report "not found" and never alter state.
    """


class InvalidArgument(ModelFarmError):
    """
    Schema or range violation (splits, capacities, symbol/time bounds).
    Rejected synchronously at command entry.
    """


class InsufficientData(InvalidArgument):
    """
    Too few candles for the lag window, or a train split smaller than 5.
    """


class DependencyUnavailable(ModelFarmError):
    """
    A dataset the job waits on failed or disappeared.
    """


class ResourceUnavailable(ModelFarmError):
    """
    Queue wait exceeded its limit; no slot was consumed.
    """


class Cancelled(ModelFarmError):
    """
    Raised inside a worker when its cancellation token fires.
    """

    def __init__(self, message: str = "Operation was cancelled", reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class TrainerError(ModelFarmError):
    """
    Anything the model-fitting collaborator raised.
    """


class CheckpointCorrupt(ModelFarmError):
    """
    checkpoint.json exists but cannot be parsed.
    """


class Conflict(ModelFarmError):
    """
    A conditional update found an unexpected status, or a delete is blocked.
    """
