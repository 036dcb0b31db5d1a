"""Streaming engine for LiveChart."""

from livechart.streaming.metrics import StreamingMetrics, calculate_streaming_metrics
from livechart.streaming.scheduler import StreamHandle, StreamScheduler, backoff_delay_ms

__all__ = [
    "StreamHandle",
    "StreamScheduler",
    "StreamingMetrics",
    "backoff_delay_ms",
    "calculate_streaming_metrics",
]
