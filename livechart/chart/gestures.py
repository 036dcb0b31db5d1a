"""Touch gesture handling for the chart camera.

Turns raw touch events into camera moves. One finger pans, two fingers
pinch-zoom. While a gesture is active every move is written to the
viewport's temporary position; the committed position only changes when
the gesture ends. Releases are also classified as tap, double tap or long
press from how far and how long the finger travelled.
"""

import logging
import math
from typing import Callable, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from livechart.chart.viewport import Viewport, clamp, clamp_zoom

logger = logging.getLogger(__name__)

Point = tuple[float, float]
PointCallback = Callable[[float, float], None]

TAP_MAX_DISTANCE_PX = 10.0
TAP_MAX_DURATION_MS = 300.0
DOUBLE_TAP_WINDOW_MS = 300.0
LONG_PRESS_MIN_DURATION_MS = 500.0

# Fraction of the chart size a full-width drag moves the offset by
PAN_SENSITIVITY = 0.5
# How far a pinch drifts the pan toward its centroid
PINCH_CENTER_PULL = 0.1

DOUBLE_TAP_ZOOM = 2.0


class GestureResult(BaseModel):
    """How a finished gesture was interpreted."""

    kind: Literal["tap", "double_tap", "long_press", "drag", "pinch"] = Field(...)
    x: float = Field(..., description="Start x as a fraction of chart width")
    y: float = Field(..., description="Start y as a fraction of chart height")
    distance: float = Field(..., ge=0, description="Travel in pixels")
    duration_ms: float = Field(..., ge=0)

    model_config = {"frozen": True}


def touch_distance(touches: Sequence[Point]) -> float:
    """Distance between the first two touches, 0 with fewer."""
    if len(touches) < 2:
        return 0.0
    (x1, y1), (x2, y2) = touches[0], touches[1]
    return math.hypot(x1 - x2, y1 - y2)


def touch_center(touches: Sequence[Point]) -> Point:
    """Midpoint of the first two touches (or the only one)."""
    if not touches:
        return 0.0, 0.0
    if len(touches) == 1:
        return touches[0]
    (x1, y1), (x2, y2) = touches[0], touches[1]
    return (x1 + x2) / 2, (y1 + y2) / 2


class InteractionController:
    """Gesture state machine driving a :class:`Viewport`.

    States are ``idle``, ``panning`` and ``pinching``. A second finger
    joining a pan switches to pinching without ending the gesture, and
    lifting one finger of a pinch falls back to panning.
    """

    def __init__(
        self,
        viewport: Viewport,
        on_tap: Optional[PointCallback] = None,
        on_double_tap: Optional[PointCallback] = None,
        on_long_press: Optional[PointCallback] = None,
        enabled: bool = True,
    ):
        self.viewport = viewport
        self.on_tap = on_tap
        self.on_double_tap = on_double_tap
        self.on_long_press = on_long_press
        self.enabled = enabled

        self.mode: Literal["idle", "panning", "pinching"] = "idle"
        self._start_time_ms = 0.0
        self._start: Point = (0.0, 0.0)
        self._last: Point = (0.0, 0.0)
        self._anchor: Point = (0.0, 0.0)
        self._initial_distance = 0.0
        self._base_zoom = 1.0
        self._base_x = 1.0
        self._base_y = 0.0
        self._pinched = False
        self._last_tap_ms: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.mode != "idle"

    def _rebase(self, touches: Sequence[Point]) -> None:
        """Take the current effective position as the new gesture baseline."""
        position = self.viewport.position
        self._base_zoom = position.zoom_level
        self._base_x = position.offset_x
        self._base_y = position.offset_y
        self._anchor = touches[0]
        if len(touches) >= 2:
            self.mode = "pinching"
            self._pinched = True
            self._initial_distance = touch_distance(touches)
        else:
            self.mode = "panning"
            self._initial_distance = 0.0

    def touch_start(self, touches: Sequence[Point], timestamp_ms: float) -> None:
        """Handle fingers going down."""
        if not self.enabled or not touches:
            return

        if self.mode == "idle":
            self._start_time_ms = timestamp_ms
            self._start = touches[0]
            self._last = touches[0]
            self._pinched = False
            self.viewport.start_user_interaction()
            self._rebase(touches)
        elif self.mode == "panning" and len(touches) >= 2:
            self._rebase(touches)

    def touch_move(self, touches: Sequence[Point], timestamp_ms: float) -> None:
        """Handle fingers moving."""
        if not self.enabled or self.mode == "idle" or not touches:
            return

        if len(touches) >= 2:
            if self.mode != "pinching":
                self._rebase(touches)
            self._pinch(touches)
        else:
            if self.mode != "panning":
                self._rebase(touches)
            self._pan(touches[0])
            self._last = touches[0]

    def _pan(self, point: Point) -> None:
        width = self.viewport.chart_width
        height = self.viewport.chart_height
        dx = point[0] - self._anchor[0]
        dy = point[1] - self._anchor[1]
        # Dragging right reveals older candles
        delta_x = -dx / width * PAN_SENSITIVITY if width > 0 else 0.0
        delta_y = -dy / height * PAN_SENSITIVITY if height > 0 else 0.0
        self.viewport.set_temporary_position(
            self._base_zoom,
            clamp(self._base_x + delta_x, 0.0, 1.0),
            clamp(self._base_y + delta_y, -1.0, 1.0),
        )

    def _pinch(self, touches: Sequence[Point]) -> None:
        if self._initial_distance <= 0:
            # Fingers started on the same spot; measure from here on
            self._initial_distance = touch_distance(touches)
            return

        ratio = touch_distance(touches) / self._initial_distance
        zoom = clamp_zoom(self._base_zoom * ratio)

        offset_x = self._base_x
        width = self.viewport.chart_width
        if width > 0:
            center_x = touch_center(touches)[0] / width
            if 0.0 <= center_x <= 1.0:
                offset_x = clamp(self._base_x + (center_x - 0.5) * PINCH_CENTER_PULL, 0.0, 1.0)

        self.viewport.set_temporary_position(zoom, offset_x, self._base_y)

    def touch_end(
        self,
        timestamp_ms: float,
        remaining: Sequence[Point] = (),
    ) -> Optional[GestureResult]:
        """Handle fingers lifting.

        Args:
            timestamp_ms: Event time.
            remaining: Touches still down after this event.

        Returns:
            GestureResult once the last finger lifts, otherwise None.
        """
        if not self.enabled or self.mode == "idle":
            return None

        if remaining:
            if self.mode == "pinching" and len(remaining) < 2:
                self._rebase(remaining)
            return None

        duration = max(0.0, timestamp_ms - self._start_time_ms)
        distance = math.hypot(self._last[0] - self._start[0], self._last[1] - self._start[1])
        x, y = self._normalized(self._start)

        self.viewport.end_user_interaction()
        self.mode = "idle"

        if self._pinched:
            kind = "pinch"
        elif distance < TAP_MAX_DISTANCE_PX and duration < TAP_MAX_DURATION_MS:
            kind = self._tap(timestamp_ms, x, y)
        elif distance < TAP_MAX_DISTANCE_PX and duration >= LONG_PRESS_MIN_DURATION_MS:
            kind = "long_press"
            self._call(self.on_long_press, x, y, "long press")
        else:
            kind = "drag"

        return GestureResult(kind=kind, x=x, y=y, distance=distance, duration_ms=duration)

    def _tap(self, timestamp_ms: float, x: float, y: float) -> str:
        is_double = (
            self._last_tap_ms is not None
            and timestamp_ms - self._last_tap_ms < DOUBLE_TAP_WINDOW_MS
        )
        self._last_tap_ms = timestamp_ms

        if is_double:
            self._call(self.on_double_tap, x, y, "double tap")
            self._toggle_zoom()
            return "double_tap"

        self._call(self.on_tap, x, y, "tap")
        return "tap"

    @staticmethod
    def _call(callback: Optional[PointCallback], x: float, y: float, kind: str) -> None:
        if callback is None:
            return
        try:
            callback(x, y)
        except Exception:
            logger.exception("Gesture %s callback raised", kind)

    def _toggle_zoom(self) -> None:
        if self.viewport.position.zoom_level < DOUBLE_TAP_ZOOM:
            self.viewport.set_zoom(DOUBLE_TAP_ZOOM)
        else:
            self.viewport.set_zoom(1.0)

    def _normalized(self, point: Point) -> Point:
        width = self.viewport.chart_width
        height = self.viewport.chart_height
        return (
            point[0] / width if width > 0 else 0.0,
            point[1] / height if height > 0 else 0.0,
        )

    # ==================== Programmatic gestures ====================

    def simulate_double_tap(self, x: float = 0.5, y: float = 0.5) -> None:
        self._call(self.on_double_tap, x, y, "double tap")
        self._toggle_zoom()

    def simulate_pinch(self, zoom_factor: float, center_x: float = 0.5) -> None:
        position = self.viewport.position
        self.viewport.set_zoom(position.zoom_level * zoom_factor)
        if center_x != 0.5:
            offset_x = clamp(position.offset_x + (center_x - 0.5) * PINCH_CENTER_PULL, 0.0, 1.0)
            self.viewport.set_pan(offset_x, position.offset_y)

    def simulate_pan(self, delta_x: float, delta_y: float) -> None:
        position = self.viewport.position
        self.viewport.set_pan(position.offset_x + delta_x, position.offset_y + delta_y)
