from .app_config import AppConfig
from .api_config import ApiConfig
from .dispatcher_config import DispatcherConfig
from .log_config import LogConfig
from .orchestrator_config import OrchestratorConfig
from .storage_config import StorageConfig

__all__ = [
    "AppConfig",
    "ApiConfig",
    "DispatcherConfig",
    "LogConfig",
    "OrchestratorConfig",
    "StorageConfig",
]
