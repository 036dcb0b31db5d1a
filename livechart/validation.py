"""OHLCV sanity checks and field-level repair."""

import math
from typing import Optional

from livechart.models import Candle

# Last-resort price when neither a reference nor the candle itself has one
FALLBACK_PRICE = 50000.0


def _usable(value: float) -> bool:
    return math.isfinite(value) and value > 0


def is_valid(candle: Candle) -> bool:
    """Check a candle against the OHLCV invariants.

    All prices must be finite and positive, volume finite and non-negative,
    and low <= open, close <= high.

    Args:
        candle: Candle to check.

    Returns:
        True if the candle can enter a series as-is.
    """
    prices = (candle.open, candle.high, candle.low, candle.close)
    if not all(_usable(p) for p in prices):
        return False
    if not math.isfinite(candle.volume) or candle.volume < 0:
        return False
    return (
        candle.low <= candle.high
        and candle.low <= candle.open <= candle.high
        and candle.low <= candle.close <= candle.high
    )


def repair(candle: Candle, reference_close: Optional[float] = None) -> Candle:
    """Replace unusable fields of a candle.

    Each price that is NaN, infinite or not positive is replaced by the
    first usable value among ``reference_close``, the candle's own close,
    its own open, and :data:`FALLBACK_PRICE`. Bad volume becomes 0.

    Fields are repaired independently; the relative ordering of open, high,
    low and close is left as it is, so the result may still fail
    :func:`is_valid`.

    Args:
        candle: Candle to repair.
        reference_close: Close of the previous valid candle, if known.

    Returns:
        A new candle with every price positive and volume non-negative.
    """
    safe_price = FALLBACK_PRICE
    for candidate in (reference_close, candle.close, candle.open):
        if candidate is not None and _usable(candidate):
            safe_price = candidate
            break

    def fix(value: float) -> float:
        return value if _usable(value) else safe_price

    volume = candle.volume
    if not math.isfinite(volume) or volume < 0:
        volume = 0.0

    return candle.model_copy(
        update={
            "open": fix(candle.open),
            "high": fix(candle.high),
            "low": fix(candle.low),
            "close": fix(candle.close),
            "volume": volume,
        }
    )
