#!filepath: modelfarm/__init__.py

from .utils.logger import Logging, logs, init_logging
from .utils.retry import Retry
from .utils.filesystem import FileSystem
from .utils.datetime_utils import DateTimeUtils
from .config.app_config import AppConfig

__version__ = "0.1.0"

# alias 简化调用
retry = Retry
fs = FileSystem
datetime_utils = DateTimeUtils

__all__ = [
    "logs", "Logging", "init_logging",
    "retry",
    "fs",
    "datetime_utils",
    "AppConfig",
]
