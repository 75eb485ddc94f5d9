#!filepath: modelfarm/config/storage_config.py
from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel


class StorageConfig(BaseModel):
    """
    所有落盘数据的根目录：
        <base_dir>/modelfarm.db
        <base_dir>/checkpoints/<jobHex>/
        <base_dir>/klines/<datasetHex>.parquet
    """

    base_dir: str = "data"
    database: str = "modelfarm.db"

    @property
    def base_path(self) -> Path:
        return Path(self.base_dir)

    @property
    def database_path(self) -> Path:
        return self.base_path / self.database

    @property
    def checkpoint_root(self) -> Path:
        return self.base_path / "checkpoints"

    @property
    def kline_root(self) -> Path:
        return self.base_path / "klines"
