#!filepath: modelfarm/config/orchestrator_config.py
from pydantic import BaseModel, Field


class OrchestratorConfig(BaseModel):
    """
    Training job orchestrator timings (seconds).
    """

    progress_interval: float = Field(default=0.5, ge=0)
    pause_poll_interval: float = Field(default=0.1, gt=0)
    dataset_poll_interval: float = Field(default=2.0, gt=0)
    queue_poll_interval: float = Field(default=0.1, gt=0)
    join_timeout: float = Field(default=30.0, gt=0)
