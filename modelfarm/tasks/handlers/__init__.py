from .base import BackgroundTaskHandler, HandlerRegistry, ProgressSink
from .ingestion import DataIngestionParameters, DataIngestionTaskHandler
