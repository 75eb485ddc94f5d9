# modelfarm/market_data/kline_store.py
"""
Per-dataset candle storage: <root>/<datasetHex>.parquet（pyarrow, zstd）
"""
from __future__ import annotations

import uuid
from pathlib import Path
from typing import Iterable, List

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from modelfarm.contracts.market import KLINE_COLUMNS, Kline
from modelfarm.utils.filesystem import FileSystem
from modelfarm.utils.logger import logs

_DTYPES = {
    "open_time": "int64",
    "open": "float64",
    "high": "float64",
    "low": "float64",
    "close": "float64",
    "volume": "float64",
    "close_time": "int64",
    "quote_asset_volume": "float64",
    "number_of_trades": "int64",
}


def klines_to_frame(klines: Iterable[Kline]) -> pd.DataFrame:
    df = pd.DataFrame([k.__dict__ for k in klines], columns=KLINE_COLUMNS)
    return df.astype(_DTYPES)


def frame_to_klines(df: pd.DataFrame) -> List[Kline]:
    df = df[KLINE_COLUMNS].astype(_DTYPES)
    return [
        Kline(
            open_time=int(r.open_time),
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
            close_time=int(r.close_time),
            quote_asset_volume=float(r.quote_asset_volume),
            number_of_trades=int(r.number_of_trades),
        )
        for r in df.itertuples(index=False)
    ]


class KlineStore:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, dataset_id: uuid.UUID) -> Path:
        return self.root / f"{uuid.UUID(str(dataset_id)).hex}.parquet"

    def exists(self, dataset_id: uuid.UUID) -> bool:
        return self.path_for(dataset_id).exists()

    def write(self, dataset_id: uuid.UUID, klines: Iterable[Kline]) -> int:
        """
        Sort by open_time, drop duplicate candles, write atomically.
        """
        df = klines_to_frame(klines)
        df = df.drop_duplicates(subset="open_time").sort_values("open_time").reset_index(drop=True)

        path = self.path_for(dataset_id)
        with FileSystem.atomic_path(path) as tmp:
            pq.write_table(pa.Table.from_pandas(df, preserve_index=False), tmp, compression="zstd")

        logs.info(f"[KlineStore] wrote {len(df)} candles → {path}")
        return len(df)

    def read_frame(self, dataset_id: uuid.UUID) -> pd.DataFrame:
        path = self.path_for(dataset_id)
        if not path.exists():
            return pd.DataFrame(columns=KLINE_COLUMNS).astype(_DTYPES)
        return pq.read_table(path).to_pandas()

    def read(self, dataset_id: uuid.UUID) -> List[Kline]:
        return frame_to_klines(self.read_frame(dataset_id))

    def count(self, dataset_id: uuid.UUID) -> int:
        path = self.path_for(dataset_id)
        if not path.exists():
            return 0
        return pq.ParquetFile(path).metadata.num_rows

    def delete(self, dataset_id: uuid.UUID) -> bool:
        path = self.path_for(dataset_id)
        if not path.exists():
            return False
        FileSystem.remove(path)
        return True
