"""Base sample source interface for LiveChart."""

from abc import ABC, abstractmethod

from livechart.models import Candle


class SampleSource(ABC):
    """Abstract base class for market data sources.

    All sources (Binance REST, simulated paper feed, etc.) must inherit from
    this class. Methods are coroutines so the streaming loop can await them
    without blocking other streams.
    """

    name = "base"

    @abstractmethod
    async def fetch_latest(self, symbol: str, interval: str, limit: int = 1) -> list[Candle]:
        """Fetch the most recent candles.

        Args:
            symbol: Trading symbol.
            interval: Interval code (1m, 5m, 1h, 1d, 1w, 1M, ...).
            limit: Number of candles, most recent last.

        Returns:
            List of candles, oldest first. May be empty.

        Raises:
            SampleSourceError: If the data could not be fetched or parsed.
        """
        pass

    @abstractmethod
    async def fetch_price(self, symbol: str) -> float:
        """Fetch the last traded price.

        Used to synthesize a candle when :meth:`fetch_latest` fails.

        Args:
            symbol: Trading symbol.

        Returns:
            Last traded price.

        Raises:
            SampleSourceError: If the price could not be fetched.
        """
        pass

    async def fetch_history(self, symbol: str, interval: str, limit: int = 100) -> list[Candle]:
        """Fetch historical candles to seed a series.

        Defaults to :meth:`fetch_latest` with a larger limit.
        """
        return await self.fetch_latest(symbol, interval, limit=limit)

    async def close(self) -> None:
        """Release any resources held by the source."""
        return None
