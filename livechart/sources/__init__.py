"""Sample sources for LiveChart."""

from livechart.sources.base import SampleSource
from livechart.sources.binance import BinanceSource
from livechart.sources.paper import PaperSource

__all__ = [
    "BinanceSource",
    "PaperSource",
    "SampleSource",
]
