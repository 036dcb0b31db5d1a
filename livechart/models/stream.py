"""Streaming state and statistics models."""

from collections import deque
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, PrivateAttr

from livechart.models.candle import Candle

# Rolling window of fetch latencies kept per stream
RESPONSE_TIME_WINDOW = 50


class StreamState(BaseModel):
    """Mutable bookkeeping for one ``(symbol, interval)`` stream."""

    symbol: str = Field(..., min_length=1, description="Trading symbol")
    interval: str = Field(..., description="Candle interval code")
    cycle_delay_ms: float = Field(..., ge=1, description="Delay between cycles")
    generation: int = Field(default=0, description="Start generation of this stream")
    is_running: bool = Field(default=True)
    cycle_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0, description="Consecutive errors")
    request_in_progress: bool = Field(default=False)
    last_valid_sample: Optional[Candle] = Field(default=None)
    last_update: Optional[datetime] = Field(default=None)

    model_config = {"validate_assignment": True}

    _response_times: deque = PrivateAttr(
        default_factory=lambda: deque(maxlen=RESPONSE_TIME_WINDOW)
    )

    @property
    def key(self) -> tuple[str, str]:
        return stream_key(self.symbol, self.interval)

    @property
    def label(self) -> str:
        return stream_label(self.symbol, self.interval)

    @property
    def response_times(self) -> tuple[float, ...]:
        return tuple(self._response_times)

    def record_response_time(self, elapsed_ms: float) -> None:
        self._response_times.append(elapsed_ms)

    @property
    def average_response_time_ms(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)


class StreamStats(BaseModel):
    """Read-only summary of a running stream."""

    symbol: str
    interval: str
    cycle_count: int = Field(..., ge=0)
    error_count: int = Field(..., ge=0)
    is_running: bool
    cycle_delay_ms: float
    last_update: Optional[datetime] = None
    average_response_time_ms: float = Field(default=0.0, ge=0)

    model_config = {"frozen": True}


StreamKey = tuple[str, str]


def stream_key(symbol: str, interval: str) -> StreamKey:
    """Registry key for a stream."""
    return symbol, interval


def stream_label(symbol: str, interval: str) -> str:
    """Human-readable stream name for logs and errors, e.g. ``BTCUSDT_1m``."""
    return f"{symbol}_{interval}"
