from .kline_store import KlineStore, frame_to_klines, klines_to_frame
from .sources import CsvKlineSource, FrameKlineSource, KlineSource
