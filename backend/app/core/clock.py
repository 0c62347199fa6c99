"""UTC clock helpers shared by models and pipeline components."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from stores without tz support (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
