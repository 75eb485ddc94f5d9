#!filepath: modelfarm/utils/datetime_utils.py
from __future__ import annotations
from datetime import datetime, timezone


class DateTimeUtils:
    """
    所有持久化时间统一为 UTC（naive 一律视为 UTC）
    """

    @staticmethod
    def utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_utc(dt: datetime) -> datetime:
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @classmethod
    def to_ms(cls, dt: datetime) -> int:
        return int(cls.ensure_utc(dt).timestamp() * 1000)

    @staticmethod
    def from_ms(ms: int) -> datetime:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)

    @classmethod
    def parse(cls, value: str | int | datetime) -> datetime:
        if isinstance(value, datetime):
            return cls.ensure_utc(value)
        if isinstance(value, int):
            return cls.from_ms(value)
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return cls.ensure_utc(datetime.fromisoformat(s))
        except ValueError:
            raise ValueError(f"Unparseable timestamp: {value}") from None
