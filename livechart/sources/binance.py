"""Binance public REST sample source.

Only unauthenticated market-data endpoints are used (klines and ticker
price). Requests run in a worker thread so the event loop stays free.
"""

import asyncio
import logging
from typing import Any, Optional

import requests

from livechart.errors import SampleSourceError
from livechart.models import Candle
from livechart.sources.base import SampleSource

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.binance.com"
DEFAULT_TIMEOUT_S = 5.0
MAX_KLINES = 1000


def parse_kline(row: list[Any]) -> Candle:
    """Convert a raw Binance kline row into a Candle.

    Rows look like ``[open_time_ms, open, high, low, close, volume, ...]``
    with prices as strings.

    Raises:
        SampleSourceError: If the row is too short or has no open time.
    """
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise SampleSourceError(f"Malformed kline row: {row!r}")
    try:
        open_time = int(row[0])
    except (TypeError, ValueError) as e:
        raise SampleSourceError(f"Malformed kline open time: {row[0]!r}") from e
    return Candle(
        timestamp=open_time,
        open=row[1],
        high=row[2],
        low=row[3],
        close=row[4],
        volume=row[5],
    )


class BinanceSource(SampleSource):
    """Sample source backed by the Binance spot REST API."""

    name = "binance"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the Binance source.

        Args:
            base_url: REST root, e.g. https://api.binance.com.
            timeout_s: Per-request timeout in seconds.
            session: Optional pre-configured requests session.
        """
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.get(url, params=params, timeout=self._timeout_s)
        except requests.RequestException as e:
            raise SampleSourceError(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            raise SampleSourceError(
                f"HTTP {response.status_code} for {url} params={params} body={response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise SampleSourceError(f"Invalid JSON from {url}: {response.text[:200]}") from e

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """Blocking kline fetch; see :meth:`fetch_latest`."""
        limit = max(1, min(MAX_KLINES, limit))
        data = self._get_json(
            "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": limit},
        )
        if not isinstance(data, list):
            raise SampleSourceError(f"Unexpected klines payload: {data!r}")
        return [parse_kline(row) for row in data]

    def get_price(self, symbol: str) -> float:
        """Blocking ticker price fetch; see :meth:`fetch_price`."""
        data = self._get_json("/api/v3/ticker/price", {"symbol": symbol.upper()})
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise SampleSourceError(f"Unexpected ticker payload: {data!r}") from e

    async def fetch_latest(self, symbol: str, interval: str, limit: int = 1) -> list[Candle]:
        return await asyncio.to_thread(self.get_klines, symbol, interval, limit)

    async def fetch_price(self, symbol: str) -> float:
        return await asyncio.to_thread(self.get_price, symbol)

    async def close(self) -> None:
        self._session.close()
