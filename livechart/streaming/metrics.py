"""Streaming performance metrics."""

from typing import Sequence

from pydantic import BaseModel, Field

# Updates per second considered fully efficient
TARGET_UPDATES_PER_SECOND = 10.0


class StreamingMetrics(BaseModel):
    """Throughput and latency summary for a stream."""

    updates_per_second: float = Field(..., ge=0)
    average_response_time_ms: float = Field(..., ge=0)
    min_response_time_ms: float = Field(..., ge=0)
    max_response_time_ms: float = Field(..., ge=0)
    efficiency: float = Field(..., ge=0, le=1, description="Share of target throughput reached")

    model_config = {"frozen": True}


def calculate_streaming_metrics(
    update_count: int,
    elapsed_seconds: float,
    response_times_ms: Sequence[float],
    target_updates_per_second: float = TARGET_UPDATES_PER_SECOND,
) -> StreamingMetrics:
    """Summarize a stream's throughput and latency.

    Args:
        update_count: Successful updates so far.
        elapsed_seconds: Time since the stream started.
        response_times_ms: Recent fetch latencies.
        target_updates_per_second: Throughput that counts as 100% efficient.

    Returns:
        StreamingMetrics, rounded for display.
    """
    updates_per_second = update_count / elapsed_seconds if elapsed_seconds > 0 else 0.0

    if response_times_ms:
        average = sum(response_times_ms) / len(response_times_ms)
        fastest = min(response_times_ms)
        slowest = max(response_times_ms)
    else:
        average = fastest = slowest = 0.0

    efficiency = 0.0
    if target_updates_per_second > 0:
        efficiency = min(1.0, updates_per_second / target_updates_per_second)

    return StreamingMetrics(
        updates_per_second=round(updates_per_second, 2),
        average_response_time_ms=round(average),
        min_response_time_ms=round(fastest),
        max_response_time_ms=round(slowest),
        efficiency=round(efficiency, 2),
    )
