# modelfarm/contracts/datasets.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from modelfarm.utils.datetime_utils import DateTimeUtils

from .enums import DatasetStatus, Exchange
from .market import KlineInterval


class DatasetDefinition(BaseModel):
    """
    An addressed window of candles: (exchange, symbol, interval, start, end).
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    description: Optional[str] = None
    exchange: Exchange = Exchange.BINANCE
    symbol: str
    interval: KlineInterval
    start_time_utc: datetime
    end_time_utc: datetime
    status: DatasetStatus = DatasetStatus.PENDING
    record_count: Optional[int] = None
    ingestion_task_id: Optional[uuid.UUID] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=DateTimeUtils.utc_now)
    updated_at: Optional[datetime] = None
