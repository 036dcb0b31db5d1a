"""LiveChart - real-time candle streaming and chart viewport engine."""

__version__ = "0.1.0"
