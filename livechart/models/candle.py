"""Candle (OHLCV) data model."""

import math
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Candle(BaseModel):
    """Represents a single OHLCV candle.

    Prices are not range-checked here: a candle fresh off the wire may be
    broken, and :mod:`livechart.validation` decides whether it is usable.
    Unparseable numbers become NaN so that repair can replace them.
    """

    timestamp: datetime = Field(..., description="Candle timestamp (UTC)")
    open: float = Field(..., description="Opening price")
    high: float = Field(..., description="High price")
    low: float = Field(..., description="Low price")
    close: float = Field(..., description="Closing price")
    volume: float = Field(default=0.0, description="Trading volume")

    model_config = {"frozen": True}

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        # Epoch milliseconds, as served by exchange REST APIs
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return _EPOCH + timedelta(milliseconds=value)
        if isinstance(value, str) and value.endswith("Z"):
            return value[:-1] + "+00:00"
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("open", "high", "low", "close", "volume", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> float:
        if isinstance(value, bool) or value is None:
            return math.nan
        try:
            return float(value)
        except (TypeError, ValueError):
            return math.nan

    @property
    def timestamp_ms(self) -> int:
        """Timestamp as integer epoch milliseconds."""
        return (self.timestamp - _EPOCH) // timedelta(milliseconds=1)
