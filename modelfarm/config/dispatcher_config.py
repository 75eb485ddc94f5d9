#!filepath: modelfarm/config/dispatcher_config.py
from pydantic import BaseModel, Field


class DispatcherConfig(BaseModel):
    """
    Background task dispatcher knobs.
    """

    max_concurrency: int = Field(default=4, ge=1)
    persist_batch_size: int = Field(default=10, ge=1)
    persist_batch_wait: float = Field(default=0.1, gt=0)
    persist_retry_delay: float = Field(default=1.0, ge=0)
    reload_window_hours: int = Field(default=24, ge=0)
