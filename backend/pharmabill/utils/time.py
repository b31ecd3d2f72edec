"""UTC clock helpers shared by the billing engine.

All lifecycle arithmetic (grace periods, trial expiry, pause durations) is done
on timezone-aware UTC datetimes. Values coming back from backends that drop
tzinfo (SQLite in tests) are normalised by `as_utc`.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return `value` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
