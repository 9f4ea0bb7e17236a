"""Naive-UTC datetime helpers.

All timestamps are stored as naive UTC datetimes. Etsy reports instants as
epoch seconds, so conversion happens at the boundary with these helpers.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    """Convert Etsy epoch seconds to a naive UTC datetime (None passes through)."""
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def to_epoch(value: datetime) -> int:
    """Convert a naive UTC datetime to integer epoch seconds."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())
