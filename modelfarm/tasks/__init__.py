from .manager import CANCELLED_MESSAGE, BackgroundTaskManager, parse_parameters
from .processor import TaskProcessor
from .handlers import BackgroundTaskHandler, DataIngestionParameters, DataIngestionTaskHandler, HandlerRegistry
