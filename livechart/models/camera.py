"""Camera (viewport) state models."""

from typing import Optional

from pydantic import BaseModel, Field


class CameraPosition(BaseModel):
    """Zoom and pan triple, used for both committed and in-gesture positions."""

    zoom_level: float = Field(default=1.0, gt=0, description="Zoom relative to fit-all")
    offset_x: float = Field(default=1.0, ge=0, le=1, description="0 = oldest, 1 = most recent")
    offset_y: float = Field(default=0.0, ge=-1, le=1, description="Vertical price offset")

    model_config = {"frozen": True}


class VisibleRange(BaseModel):
    """Half-open index range ``[start, end)`` of visible candles."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    model_config = {"frozen": True}

    @property
    def count(self) -> int:
        return self.end - self.start


class CameraState(BaseModel):
    """Snapshot of the camera as presented to renderers."""

    zoom_level: float = Field(..., gt=0)
    offset_x: float = Field(..., ge=0, le=1)
    offset_y: float = Field(..., ge=-1, le=1)
    min_price: float = Field(..., description="Lower bound of the price axis")
    max_price: float = Field(..., description="Upper bound of the price axis")
    start_index: int = Field(..., ge=0)
    end_index: int = Field(..., ge=0)
    is_user_interacting: bool = Field(default=False)
    temporary_position: Optional[CameraPosition] = Field(default=None)

    model_config = {"frozen": True}
