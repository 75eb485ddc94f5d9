# modelfarm/tasks/handlers/ingestion.py
"""
DataIngestionTaskHandler

Pulls candles page by page (≤ 1000 per page, each page retried), writes
the dataset's parquet file and flips the Dataset to Ready. Any error
marks the Dataset Failed and propagates to the processor.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Callable, List

from pydantic import BaseModel, field_validator

from modelfarm.contracts.datasets import DatasetDefinition
from modelfarm.contracts.enums import BackgroundTaskType, DatasetStatus, Exchange
from modelfarm.contracts.market import Kline, KlineInterval
from modelfarm.contracts.tasks import BackgroundTask, TaskProgress
from modelfarm.market_data.kline_store import KlineStore
from modelfarm.market_data.sources import KlineSource
from modelfarm.persistence.documents import DocumentRepository
from modelfarm.utils.cancellation import CancellationToken
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.errors import Cancelled, InvalidArgument, NotFound
from modelfarm.utils.logger import logs
from modelfarm.utils.retry import Retry

from ..manager import parse_parameters
from .base import BackgroundTaskHandler, ProgressSink

PAGE_SIZE = 1000


class DataIngestionParameters(BaseModel):
    dataset_id: uuid.UUID
    exchange: Exchange = Exchange.BINANCE
    symbol: str
    interval: KlineInterval
    start_time_utc: datetime
    end_time_utc: datetime

    @field_validator("start_time_utc", "end_time_utc")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return DateTimeUtils.ensure_utc(v)

    @classmethod
    def for_dataset(cls, dataset: DatasetDefinition) -> "DataIngestionParameters":
        return cls(
            dataset_id=dataset.id,
            exchange=dataset.exchange,
            symbol=dataset.symbol,
            interval=dataset.interval,
            start_time_utc=dataset.start_time_utc,
            end_time_utc=dataset.end_time_utc,
        )


def validate_window(symbol: str, start: datetime, end: datetime, now: datetime) -> None:
    if not symbol or not symbol.strip():
        raise InvalidArgument("Symbol is required")
    if DateTimeUtils.ensure_utc(start) >= DateTimeUtils.ensure_utc(end):
        raise InvalidArgument("Start time must be before end time")
    if DateTimeUtils.ensure_utc(end) > now:
        raise InvalidArgument("End time cannot be in the future")


def estimate_record_count(interval: KlineInterval, start: datetime, end: datetime) -> int:
    span_ms = DateTimeUtils.to_ms(end) - DateTimeUtils.to_ms(start)
    return max(0, span_ms // interval.milliseconds)


class DataIngestionTaskHandler(BackgroundTaskHandler):
    task_type = BackgroundTaskType.DATA_INGESTION

    def __init__(
        self,
        datasets: DocumentRepository[DatasetDefinition],
        store: KlineStore,
        source: KlineSource,
        clock: Callable[[], datetime] = DateTimeUtils.utc_now,
        page_size: int = PAGE_SIZE,
        retry_delay: float = 1.0,
        retry_attempts: int = 3,
    ):
        self.datasets = datasets
        self.store = store
        self.source = source
        self.clock = clock
        self.page_size = page_size
        self.retry_delay = retry_delay
        self.retry_attempts = retry_attempts

    # ------------------------------------------------------------------
    def execute(self, task: BackgroundTask, report: ProgressSink, token: CancellationToken):
        params: DataIngestionParameters = parse_parameters(task, DataIngestionParameters)
        dataset = self.datasets.get(params.dataset_id)
        if dataset is None:
            raise NotFound(f"Dataset {params.dataset_id} not found")

        try:
            validate_window(params.symbol, params.start_time_utc, params.end_time_utc, self.clock())
            self._set_status(dataset.id, DatasetStatus.DOWNLOADING, ingestion_task_id=task.id)
            result = self._ingest(params, report, token)
        except Cancelled as e:
            if e.reason != "shutdown":
                self._set_status(dataset.id, DatasetStatus.FAILED, error_message="Ingestion was cancelled")
            raise
        except Exception as e:
            self._set_status(dataset.id, DatasetStatus.FAILED, error_message=str(e))
            raise

        self._set_status(
            dataset.id,
            DatasetStatus.READY,
            record_count=result["total_records"],
            error_message=None,
        )
        return result

    def _ingest(self, params: DataIngestionParameters, report: ProgressSink, token: CancellationToken) -> dict:
        started = time.perf_counter()
        interval = params.interval
        start_ms = DateTimeUtils.to_ms(params.start_time_utc)
        end_ms = DateTimeUtils.to_ms(params.end_time_utc)
        estimated = estimate_record_count(interval, params.start_time_utc, params.end_time_utc)

        report(TaskProgress(percent=0, current=0, total=estimated,
                            message=f"Starting... (~{estimated:,} records expected)"))
        logs.info(
            f"[Ingestion] {params.symbol} {interval.value} "
            f"{params.start_time_utc.isoformat()} → {params.end_time_utc.isoformat()} (~{estimated} records)"
        )

        klines: List[Kline] = []
        cursor = start_ms
        while cursor <= end_ms:
            token.raise_if_cancelled()
            page = Retry.run(
                self.source.fetch,
                params.exchange,
                params.symbol,
                interval,
                cursor,
                end_ms,
                self.page_size,
                exceptions=(OSError, ConnectionError, TimeoutError),
                max_attempts=self.retry_attempts,
                delay=self.retry_delay,
                token=token,
            )
            if not page:
                break
            klines.extend(page)
            cursor = page[-1].open_time + interval.milliseconds

            count = len(klines)
            percent = min(99.0, count * 100.0 / estimated) if estimated > 0 else 0.0
            report(TaskProgress(percent=percent, current=count, total=estimated,
                                message=f"Fetched {count:,} / ~{estimated:,} records..."))
            if len(page) < self.page_size:
                break

        token.raise_if_cancelled()
        written = self.store.write(params.dataset_id, klines)
        elapsed = time.perf_counter() - started

        first = klines[0].open_time_utc if klines else params.start_time_utc
        last = klines[-1].close_time_utc if klines else params.end_time_utc
        report(TaskProgress(percent=100, current=written, total=estimated,
                            message=f"Completed: {written:,} records in {elapsed:.1f}s"))
        logs.info(f"[Ingestion] dataset={params.dataset_id} wrote {written} records in {elapsed:.1f}s")
        return {
            "total_records": written,
            "start": first.isoformat(),
            "end": last.isoformat(),
            "duration_seconds": round(elapsed, 3),
        }

    def _set_status(self, dataset_id: uuid.UUID, status: DatasetStatus, **fields) -> None:
        current = self.datasets.get(dataset_id)
        if current is None:
            return
        self.datasets.upsert(
            current.model_copy(update={"status": status, "updated_at": self.clock(), **fields})
        )
