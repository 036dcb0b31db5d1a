"""In-memory candle series.

A series holds the candles of one symbol and interval, ordered by window
start with at most one candle per window, and capped at ``max_candles``
(oldest candles are evicted first).
"""

import logging
import math
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, Field

from livechart.models import Candle
from livechart.timeframes import classify, window_start_ms
from livechart.validation import is_valid, repair

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDLES = 500


class UpsertResult(BaseModel):
    """Result of applying one candle to a series."""

    candles: tuple[Candle, ...] = Field(..., description="Resulting series")
    action: Literal["updated", "appended", "ignored"] = Field(..., description="What happened")
    index: Optional[int] = Field(default=None, ge=0, description="Index of the touched candle")

    model_config = {"frozen": True}


class PriceRange(BaseModel):
    """Price axis bounds for rendering."""

    min_price: float
    max_price: float
    price_range: float = Field(..., ge=0)
    tick_size: float = Field(..., gt=0)

    model_config = {"frozen": True}


def upsert(
    series: Sequence[Candle],
    candle: Candle,
    interval: str,
    max_candles: int = DEFAULT_MAX_CANDLES,
    scan_limit: Optional[int] = None,
) -> UpsertResult:
    """Apply a candle to a series according to its time window.

    Args:
        series: Existing ordered series. Not modified.
        candle: Candle to apply. Must already be valid.
        interval: Interval code.
        max_candles: Capacity; appends beyond it evict from the front.
        scan_limit: Passed through to :func:`livechart.timeframes.classify`.

    Returns:
        UpsertResult with the new series, the action and the index touched.
    """
    current = tuple(series)
    decision = classify(current, candle, interval, scan_limit=scan_limit)

    if decision.action == "update":
        updated = current[: decision.index] + (candle,) + current[decision.index + 1 :]
        return UpsertResult(candles=updated, action="updated", index=decision.index)

    if decision.action == "append":
        appended = current + (candle,)
        if len(appended) > max_candles:
            appended = appended[len(appended) - max_candles :]
        return UpsertResult(candles=appended, action="appended", index=len(appended) - 1)

    return UpsertResult(candles=current, action="ignored")


class CandleSeries:
    """Bounded, window-deduplicated candle series for one symbol/interval.

    Readers get immutable tuples from :meth:`snapshot`; the series itself is
    only changed through :meth:`upsert`, :meth:`load` and :meth:`clear`.
    """

    def __init__(
        self,
        symbol: str,
        interval: str,
        max_candles: int = DEFAULT_MAX_CANDLES,
        scan_limit: Optional[int] = None,
    ):
        """Initialize an empty series.

        Args:
            symbol: Trading symbol.
            interval: Interval code.
            max_candles: Capacity (at least 1).
            scan_limit: Bound on the late-arrival backward scan.
        """
        self.symbol = symbol
        self.interval = interval
        self.max_candles = max(1, max_candles)
        self.scan_limit = scan_limit
        self._candles: tuple[Candle, ...] = ()

    def __len__(self) -> int:
        return len(self._candles)

    def __repr__(self) -> str:
        return f"CandleSeries({self.symbol!r}, {self.interval!r}, {len(self)} candles)"

    @property
    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def snapshot(self) -> tuple[Candle, ...]:
        """Current candles, oldest first."""
        return self._candles

    def upsert(self, candle: Candle) -> UpsertResult:
        """Apply a validated candle and keep the result."""
        result = upsert(
            self._candles,
            candle,
            self.interval,
            max_candles=self.max_candles,
            scan_limit=self.scan_limit,
        )
        self._candles = result.candles
        if result.action == "appended":
            logger.debug(
                "New %s candle for %s at %s (%d total)",
                self.interval,
                self.symbol,
                candle.timestamp.isoformat(),
                len(self._candles),
            )
        return result

    def load(self, candles: Sequence[Candle]) -> int:
        """Replace the series with historical candles.

        Invalid candles are repaired against the previous close; those still
        invalid are dropped. The rest are sorted and deduplicated by window
        (a later candle wins over an earlier one in the same window), then
        trimmed to capacity.

        Args:
            candles: Historical candles in any order.

        Returns:
            Number of candles kept.
        """
        by_window: dict[int, Candle] = {}
        reference: Optional[float] = None
        for candle in sorted(candles, key=lambda c: c.timestamp):
            if not is_valid(candle):
                candle = repair(candle, reference)
                if not is_valid(candle):
                    logger.warning("Dropping unrepairable historical candle at %s", candle.timestamp)
                    continue
            by_window[window_start_ms(candle.timestamp_ms, self.interval)] = candle
            reference = candle.close

        ordered = tuple(by_window[w] for w in sorted(by_window))
        self._candles = ordered[-self.max_candles :]
        return len(self._candles)

    def clear(self) -> None:
        self._candles = ()


def visible_price_bounds(candles: Sequence[Candle]) -> tuple[float, float]:
    """Lowest low and highest high of a slice; (0, 0) when empty."""
    if not candles:
        return 0.0, 0.0
    return min(c.low for c in candles), max(c.high for c in candles)


def tick_size(price_range: float) -> float:
    """Pick a readable tick spacing (1, 2 or 5 times a power of ten).

    Args:
        price_range: Span of the price axis.

    Returns:
        Tick size; 1 for non-positive ranges.
    """
    if price_range <= 0 or not math.isfinite(price_range):
        return 1.0

    magnitude = 10 ** math.floor(math.log10(price_range))
    normalized = price_range / magnitude

    if normalized <= 1:
        return magnitude * 0.1
    if normalized <= 2:
        return magnitude * 0.2
    if normalized <= 5:
        return magnitude * 0.5
    return magnitude


def optimal_price_range(
    candles: Sequence[Candle],
    padding_percent: float = 0.05,
    min_range_percent: float = 0.02,
) -> PriceRange:
    """Compute a padded, tick-aligned price range for a visible slice.

    Very flat slices are widened to at least ``min_range_percent`` of the
    average price so a constant series still renders with some height.

    Args:
        candles: Visible candles.
        padding_percent: Extra space above and below, as a fraction of range.
        min_range_percent: Minimum range as a fraction of the average price.

    Returns:
        PriceRange; 0..100 with tick 10 when there are no candles.
    """
    if not candles:
        return PriceRange(min_price=0.0, max_price=100.0, price_range=100.0, tick_size=10.0)

    min_price, max_price = visible_price_bounds(candles)
    base_range = max_price - min_price

    center = (max_price + min_price) / 2
    min_range = center * min_range_percent
    if base_range < min_range:
        base_range = min_range
        min_price = center - base_range / 2
        max_price = center + base_range / 2

    padding = base_range * padding_percent
    min_price -= padding
    max_price += padding

    tick = tick_size(max_price - min_price)
    min_price = math.floor(min_price / tick) * tick
    max_price = math.ceil(max_price / tick) * tick

    return PriceRange(
        min_price=min_price,
        max_price=max_price,
        price_range=max_price - min_price,
        tick_size=tick,
    )


def price_labels(
    min_price: float,
    max_price: float,
    tick: float,
    max_labels: int = 5,
) -> list[float]:
    """Generate price axis labels, always covering both ends.

    Args:
        min_price: Lower bound.
        max_price: Upper bound.
        tick: Tick size.
        max_labels: Maximum number of evenly spaced labels before the
            end points are added.

    Returns:
        Ascending list of prices.
    """
    if tick <= 0 or max_price < min_price:
        return [min_price, max_price]

    labels: list[float] = []
    price = math.ceil(min_price / tick) * tick
    while price <= max_price and len(labels) < max_labels:
        labels.append(price)
        price += tick

    if not labels or labels[0] > min_price + tick:
        labels.insert(0, min_price)
    if labels[-1] < max_price - tick:
        labels.append(max_price)

    return labels
