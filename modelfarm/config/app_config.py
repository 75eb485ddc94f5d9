#!filepath: modelfarm/config/app_config.py
import os

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .api_config import ApiConfig
from .dispatcher_config import DispatcherConfig
from .log_config import LogConfig
from .orchestrator_config import OrchestratorConfig
from .storage_config import StorageConfig


def project_root() -> str:
    """
    modelfarm/config/app_config.py → modelfarm/config → modelfarm → project_root
    """
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "../../"))


def default_config_path() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "base.yml")


# env var → (section, key, caster)
_ENV_OVERRIDES = {
    "MODELFARM_BASE_DIR": ("storage", "base_dir", str),
    "MODELFARM_LOG_DIR": ("log", "dir", str),
    "MODELFARM_LOG_LEVEL": ("log", "level", str),
    "MODELFARM_MAX_CONCURRENCY": ("dispatcher", "max_concurrency", int),
    "MODELFARM_API_PORT": ("api", "port", int),
}


class AppConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def load(cls, path: str | None = None) -> "AppConfig":
        """
        加载 YAML 配置 + .env
        - 默认使用 modelfarm/config/base.yml
        - 环境变量覆盖 YAML
        """
        load_dotenv(os.path.join(project_root(), ".env"))

        if path is None:
            path = default_config_path()

        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        for env_key, (section, key, cast) in _ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value:
                raw.setdefault(section, {})[key] = cast(value)

        return cls(**raw)
