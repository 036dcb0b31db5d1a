"""Data models for LiveChart."""

from livechart.models.candle import Candle
from livechart.models.camera import CameraPosition, CameraState, VisibleRange
from livechart.models.stream import StreamKey, StreamState, StreamStats, stream_key, stream_label

__all__ = [
    "CameraPosition",
    "CameraState",
    "Candle",
    "StreamKey",
    "StreamState",
    "StreamStats",
    "VisibleRange",
    "stream_key",
    "stream_label",
]
