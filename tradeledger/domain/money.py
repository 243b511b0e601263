"""
Decimal parsing for venue money/quantity fields.

Venue payloads carry decimal text. Every value is parsed into Decimal and
truncated (ROUND_DOWN) to a fixed number of fractional digits, so repeated
aggregation never drifts. Anything unparseable or non-finite becomes the
default instead of raising.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Optional

DECIMAL_PLACES = 8
ZERO = Decimal("0")

_QUANTUM = {places: Decimal(1).scaleb(-places) for places in range(0, 19)}


def truncate(value: Decimal, places: int = DECIMAL_PLACES) -> Decimal:
    """Truncate toward zero to `places` fractional digits."""
    try:
        return value.quantize(_QUANTUM[places], rounding=ROUND_DOWN)
    except InvalidOperation:
        # Exceeds context precision; keep the exact value
        return value


def to_decimal(value: Any, default: Decimal = ZERO, places: int = DECIMAL_PLACES) -> Decimal:
    """
    Parse a venue numeric field.

    Args:
        value: Decimal text, int, float or Decimal (None allowed)
        default: Returned for missing, malformed or non-finite input
        places: Fractional digits kept (truncated)
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            return default
    if not parsed.is_finite():
        return default
    return truncate(parsed, places)


def to_int(value: Any) -> Optional[int]:
    """Parse a venue id; None when absent or malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return None


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def from_epoch_ms(value: Any) -> Optional[datetime]:
    """Convert an epoch-milliseconds venue timestamp to an aware UTC datetime."""
    ms = to_int(value)
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
