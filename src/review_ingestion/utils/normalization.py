"""
Normalization helpers shared by every platform provider
"""
import hashlib
import math
from datetime import datetime, timezone
from typing import Any, Optional

MIN_RATING = 0.0
MAX_RATING = 5.0

# Unix timestamps above this are milliseconds (year 5138 in seconds)
_MILLISECONDS_THRESHOLD = 1e11


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_rating(value: Any) -> float:
    """Normalize any rating-like value into [0, 5]; non-numeric input becomes 0"""
    if value is None or isinstance(value, bool):
        return MIN_RATING
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return MIN_RATING
    if math.isnan(rating):
        return MIN_RATING
    return max(MIN_RATING, min(MAX_RATING, rating))


def _from_unix(value: float) -> Optional[datetime]:
    if value > _MILLISECONDS_THRESHOLD:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_string(value: str) -> Optional[datetime]:
    text = value.strip()
    if not text:
        return None
    try:
        return _from_unix(float(text))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    # Graph API style offsets, e.g. 2024-03-01T10:15:00+0000
    try:
        return datetime.strptime(text, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        return None


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a platform timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings and unix seconds or milliseconds.
    Missing or unparseable values fall back to the current time so a single
    bad field never drops the whole review.
    """
    parsed: Optional[datetime] = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_unix(float(value))
    elif isinstance(value, str):
        parsed = _from_string(value)

    if parsed is None:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def generate_external_id(*parts: Any) -> str:
    """Deterministic identifier for platforms that expose no stable review id"""
    source = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.md5(source.encode("utf-8")).hexdigest()


def is_recordable(content: Optional[str], rating: Any) -> bool:
    """A review with neither text nor a rating carries nothing worth storing"""
    has_content = bool(content and content.strip())
    return has_content or clamp_rating(rating) > MIN_RATING
