"""CLI commands for LiveChart.

This package provides the command-line interface for LiveChart:
configuration and live candle streaming.
"""

from livechart.cli.main import cli, main

__all__ = ["cli", "main"]
