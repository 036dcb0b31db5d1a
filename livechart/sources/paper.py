"""Simulated sample source for offline and paper use."""

import random
from datetime import datetime, timezone
from typing import Callable, Optional

from livechart.models import Candle
from livechart.sources.base import SampleSource
from livechart.timeframes import from_ms, interval_duration_ms, to_ms, window_start_ms


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaperSource(SampleSource):
    """Random-walk price feed.

    Each symbol keeps a last price and the candle of the window in progress.
    Every fetch moves the price a little and folds it into that candle, so
    repeated fetches within one window behave like a live exchange: the
    candle's close moves and its high/low widen.
    """

    name = "paper"

    # Default per-tick volatility as a fraction of price
    DEFAULT_VOLATILITY = 0.001

    def __init__(
        self,
        start_price: float = 100.0,
        volatility: float = DEFAULT_VOLATILITY,
        seed: Optional[int] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize the simulated source.

        Args:
            start_price: Initial price for every new symbol.
            volatility: Maximum relative move per tick.
            seed: Random seed for reproducible feeds.
            clock: Returns the current time; injectable for tests.
        """
        self._start_price = start_price
        self._volatility = volatility
        self._random = random.Random(seed)
        self._clock = clock
        self._prices: dict[str, float] = {}
        self._current: dict[tuple[str, str], Candle] = {}

    def _step(self, symbol: str) -> float:
        price = self._prices.get(symbol, self._start_price)
        move = self._random.uniform(-self._volatility, self._volatility)
        price = max(price * (1 + move), 0.01)
        self._prices[symbol] = price
        return price

    def _tick(self, symbol: str, interval: str) -> Candle:
        price = self._step(symbol)
        now_ms = to_ms(self._clock())
        start = window_start_ms(now_ms, interval)
        volume = float(self._random.randint(1, 500))

        current = self._current.get((symbol, interval))
        if current is not None and current.timestamp_ms == start:
            candle = current.model_copy(
                update={
                    "high": max(current.high, price),
                    "low": min(current.low, price),
                    "close": price,
                    "volume": current.volume + volume,
                }
            )
        else:
            candle = Candle(
                timestamp=from_ms(start),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=volume,
            )
        self._current[(symbol, interval)] = candle
        return candle

    async def fetch_latest(self, symbol: str, interval: str, limit: int = 1) -> list[Candle]:
        if limit > 1:
            return await self.fetch_history(symbol, interval, limit)
        return [self._tick(symbol, interval)]

    async def fetch_price(self, symbol: str) -> float:
        return self._prices.get(symbol, self._start_price)

    async def fetch_history(self, symbol: str, interval: str, limit: int = 100) -> list[Candle]:
        """Generate ``limit`` consecutive candles ending with the current window."""
        duration = interval_duration_ms(interval)
        end = window_start_ms(to_ms(self._clock()), interval)
        candles = []
        for i in range(limit - 1, -1, -1):
            # Calendar intervals are approximated by stepping back and re-aligning
            start = window_start_ms(end - i * duration, interval)
            open_price = self._prices.get(symbol, self._start_price)
            close_price = self._step(symbol)
            wiggle = abs(close_price - open_price) * self._random.uniform(0, 0.5)
            candles.append(
                Candle(
                    timestamp=from_ms(start),
                    open=open_price,
                    high=max(open_price, close_price) + wiggle,
                    low=max(min(open_price, close_price) - wiggle, 0.01),
                    close=close_price,
                    volume=float(self._random.randint(100, 10000)),
                )
            )
        if candles:
            self._current[(symbol, interval)] = candles[-1]
        return candles
