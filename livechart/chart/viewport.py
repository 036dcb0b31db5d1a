"""Chart camera.

Maps a zoom level and horizontal/vertical offsets onto the slice of a
candle series that is visible and the price range it is drawn against.

Horizontal offset runs from 0 (oldest candles) to 1 (most recent).
Zoom is relative to the "fit all" width and kept within [0.1, 20].

During a gesture the camera has two positions: the committed one and a
temporary one written by the gesture on every move. Every read goes
through :attr:`Viewport.position`, which returns the temporary position
while one exists, so callers never need to know a gesture is running.
Bad input (NaN, out of range, empty series) is clamped or ignored.
"""

import bisect
import logging
import math
from datetime import datetime
from typing import Callable, Optional, Sequence, TypeVar

from livechart.models import CameraPosition, CameraState, Candle, VisibleRange
from livechart.timeframes import to_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_ZOOM = 0.1
MAX_ZOOM = 20.0
ZOOM_FACTOR = 1.5
PAN_STEP = 0.1

# Target candle width used by fit_visible
FIT_VISIBLE_CANDLE_PX = 8.0


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_zoom(zoom: float) -> float:
    return clamp(zoom, MIN_ZOOM, MAX_ZOOM)


def make_position(zoom_level: float, offset_x: float, offset_y: float) -> CameraPosition:
    """Build a camera position with every field clamped into range."""
    return CameraPosition(
        zoom_level=clamp_zoom(zoom_level),
        offset_x=clamp(offset_x, 0.0, 1.0),
        offset_y=clamp(offset_y, -1.0, 1.0),
    )


class Viewport:
    """Zoomable, pannable window over a candle series."""

    def __init__(
        self,
        candle_count: int = 0,
        chart_width: float = 800.0,
        chart_height: float = 300.0,
        min_candle_width: float = 2.0,
        max_candle_width: float = 50.0,
        default_zoom: float = 1.0,
        on_change: Optional[Callable[[CameraState], None]] = None,
    ):
        """Initialize the camera at the most recent data.

        Args:
            candle_count: Number of candles in the series.
            chart_width: Drawing area width in pixels.
            chart_height: Drawing area height in pixels.
            min_candle_width: Narrowest candle in pixels.
            max_candle_width: Widest candle in pixels.
            default_zoom: Zoom used by reset_zoom and fit_all.
            on_change: Called with the new state after every change.
        """
        self._candle_count = max(0, int(candle_count))
        self.chart_width = max(0.0, chart_width)
        self.chart_height = max(0.0, chart_height)
        self.min_candle_width = max(0.0, min_candle_width)
        self.max_candle_width = max(self.min_candle_width, max_candle_width)
        self.default_zoom = clamp_zoom(default_zoom) if _finite(default_zoom) else 1.0
        self.on_change = on_change

        self._committed = make_position(self.default_zoom, 1.0, 0.0)
        self._temporary: Optional[CameraPosition] = None
        self._interacting = False
        self._min_price = 0.0
        self._max_price = 100.0

    # ==================== Effective state ====================

    @property
    def position(self) -> CameraPosition:
        """Position in effect: the gesture's temporary one, else committed."""
        if self._interacting and self._temporary is not None:
            return self._temporary
        return self._committed

    @property
    def committed_position(self) -> CameraPosition:
        return self._committed

    @property
    def is_user_interacting(self) -> bool:
        return self._interacting

    @property
    def candle_count(self) -> int:
        return self._candle_count

    @candle_count.setter
    def candle_count(self, count: int) -> None:
        self._candle_count = max(0, int(count))

    def set_chart_size(self, width: float, height: float) -> None:
        if _finite(width):
            self.chart_width = max(0.0, width)
        if _finite(height):
            self.chart_height = max(0.0, height)
        self._changed()

    @property
    def state(self) -> CameraState:
        """Snapshot for renderers. Indices reflect the effective position."""
        visible = self.visible_range()
        return CameraState(
            zoom_level=self._committed.zoom_level,
            offset_x=self._committed.offset_x,
            offset_y=self._committed.offset_y,
            min_price=self._min_price,
            max_price=self._max_price,
            start_index=visible.start,
            end_index=visible.end,
            is_user_interacting=self._interacting,
            temporary_position=self._temporary if self._interacting else None,
        )

    # ==================== Derived geometry ====================

    def candle_width(self) -> float:
        """Width of one candle in pixels at the effective zoom."""
        if self._candle_count == 0:
            return self.min_candle_width
        base_width = self.chart_width / self._candle_count
        return clamp(base_width * self.position.zoom_level, self.min_candle_width, self.max_candle_width)

    def visible_candle_count(self) -> int:
        """How many candles fit across the chart."""
        width = self.candle_width()
        if width <= 0:
            return 0
        return int(math.floor(self.chart_width / width))

    def visible_range(self) -> VisibleRange:
        """Indices of the visible candles as ``[start, end)``."""
        if self._candle_count == 0:
            return VisibleRange(start=0, end=0)

        shown = min(self.visible_candle_count(), self._candle_count)
        max_offset = self._candle_count - shown
        start = int(math.floor(self.position.offset_x * max_offset))
        start = clamp(start, 0, max_offset)
        end = min(start + shown, self._candle_count)
        return VisibleRange(start=int(start), end=int(end))

    def visible_slice(self, candles: Sequence[T]) -> Sequence[T]:
        """Cut the visible part out of a series snapshot.

        The snapshot's length is taken as the candle count.
        """
        self._candle_count = len(candles)
        visible = self.visible_range()
        return candles[visible.start : visible.end]

    def is_fully_visible(self) -> bool:
        visible = self.visible_range()
        return visible.start == 0 and visible.end == self._candle_count

    def price_bounds(self) -> tuple[float, float]:
        """Price axis bounds after applying the vertical offset.

        An offset of 1 shifts the window down by half its height.
        """
        span = self._max_price - self._min_price
        shift = self.position.offset_y * span / 2
        return self._min_price - shift, self._max_price - shift

    def price_to_y(self, price: float) -> float:
        """Pixel row for a price (0 at the top)."""
        low, high = self.price_bounds()
        if high <= low:
            return self.chart_height / 2
        return self.chart_height * (1 - (price - low) / (high - low))

    def y_to_price(self, y: float) -> float:
        """Price at a pixel row."""
        low, high = self.price_bounds()
        if self.chart_height <= 0:
            return (low + high) / 2
        return low + (1 - y / self.chart_height) * (high - low)

    # ==================== Zoom ====================

    def zoom_in(self) -> None:
        self._move(zoom_level=self.position.zoom_level * ZOOM_FACTOR)

    def zoom_out(self) -> None:
        self._move(zoom_level=self.position.zoom_level / ZOOM_FACTOR)

    def set_zoom(self, level: float) -> None:
        self._move(zoom_level=level)

    def reset_zoom(self) -> None:
        self._move(zoom_level=self.default_zoom)

    # ==================== Pan ====================

    def pan_left(self) -> None:
        self._move(offset_x=self.position.offset_x - PAN_STEP)

    def pan_right(self) -> None:
        self._move(offset_x=self.position.offset_x + PAN_STEP)

    def pan_up(self) -> None:
        self._move(offset_y=self.position.offset_y - PAN_STEP)

    def pan_down(self) -> None:
        self._move(offset_y=self.position.offset_y + PAN_STEP)

    def set_pan(self, offset_x: float, offset_y: float) -> None:
        self._move(offset_x=offset_x, offset_y=offset_y)

    # ==================== Navigation ====================

    def go_to_start(self) -> None:
        self._move(offset_x=0.0)

    def go_to_end(self) -> None:
        self._move(offset_x=1.0)

    def go_to_index(self, index: int) -> None:
        """Scroll so that ``index`` sits at the proportional position."""
        if self._candle_count == 0 or not _finite(index):
            return
        if self._candle_count == 1:
            self.go_to_end()
            return
        normalized = clamp(index, 0, self._candle_count - 1)
        self._move(offset_x=normalized / (self._candle_count - 1))

    def go_to_timestamp(self, timestamp: datetime, candles: Sequence[Candle]) -> None:
        """Scroll to the candle closest in time to ``timestamp``.

        Without candles this goes to the most recent data.
        """
        if not candles:
            self.go_to_end()
            return

        self._candle_count = len(candles)
        times = [c.timestamp_ms for c in candles]
        target = to_ms(timestamp)
        i = bisect.bisect_left(times, target)
        if i >= len(times):
            i = len(times) - 1
        elif i > 0 and target - times[i - 1] <= times[i] - target:
            i -= 1
        self.go_to_index(i)

    # ==================== Fit ====================

    def fit_all(self) -> None:
        self._move(zoom_level=self.default_zoom, offset_x=1.0, offset_y=0.0)

    def fit_visible(self) -> None:
        """Zoom so the currently visible candles are about 8px wide."""
        visible = self.visible_candle_count()
        if visible == 0:
            return
        self._move(zoom_level=self.chart_width / (visible * FIT_VISIBLE_CANDLE_PX))

    def fit_price_range(self, min_price: float, max_price: float) -> None:
        """Set the price axis bounds and re-center vertically."""
        if not (_finite(min_price) and _finite(max_price)):
            return
        if min_price > max_price:
            min_price, max_price = max_price, min_price
        self._min_price = min_price
        self._max_price = max_price
        self._move(offset_y=0.0)

    # ==================== User interaction ====================

    def start_user_interaction(self) -> None:
        """Begin a gesture. Moves go to the temporary position until it ends."""
        self._interacting = True
        self._temporary = None

    def set_temporary_position(self, zoom_level: float, offset_x: float, offset_y: float) -> None:
        """Record the in-gesture position. Ignored outside a gesture."""
        if not self._interacting:
            return
        if not (_finite(zoom_level) and _finite(offset_x) and _finite(offset_y)):
            return
        self._temporary = make_position(zoom_level, offset_x, offset_y)
        self._changed()

    def end_user_interaction(self) -> None:
        """Finish a gesture, committing the temporary position if any."""
        if self._temporary is not None:
            self._committed = self._temporary
        self._temporary = None
        self._interacting = False
        self._changed()

    def cancel_user_interaction(self) -> None:
        """Finish a gesture without committing."""
        self._temporary = None
        self._interacting = False
        self._changed()

    # ==================== Internals ====================

    def _move(
        self,
        zoom_level: Optional[float] = None,
        offset_x: Optional[float] = None,
        offset_y: Optional[float] = None,
    ) -> None:
        current = self.position
        new = make_position(
            zoom_level if _finite(zoom_level) else current.zoom_level,
            offset_x if _finite(offset_x) else current.offset_x,
            offset_y if _finite(offset_y) else current.offset_y,
        )
        if self._interacting:
            self._temporary = new
        else:
            self._committed = new
        self._changed()

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.state)
        except Exception:
            logger.exception("Camera change listener raised")
