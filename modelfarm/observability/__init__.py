from .progress import ProgressReporter, ProgressThrottle
from .timer import Timer
