"""Chart camera and gesture handling."""

from livechart.chart.gestures import GestureResult, InteractionController
from livechart.chart.viewport import Viewport

__all__ = [
    "GestureResult",
    "InteractionController",
    "Viewport",
]
