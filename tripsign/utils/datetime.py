from __future__ import annotations
from datetime import datetime, UTC
from typing import Optional

__all__ = ["utc_now", "ensure_aware_utc", "isoformat_utc"]


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(UTC)


def ensure_aware_utc(dt: datetime | None) -> Optional[datetime]:
    """Naive values coming back from SQLite are UTC; tag them as such."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime | None) -> str:
    """ISO-8601 with an explicit offset, second precision (audit page format)."""
    aware = ensure_aware_utc(dt)
    if aware is None:
        return ""
    return aware.replace(microsecond=0).isoformat()
