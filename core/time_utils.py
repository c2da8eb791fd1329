"""
core/time_utils.py -- UTC timestamp helpers shared by every store.

Timestamps are persisted as ISO-8601 text. to_iso() always renders
microseconds and the +00:00 offset so every stored value has the same width
and SQL string comparison orders them chronologically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize dt as fixed-width UTC ISO-8601. Naive values are treated as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 string into an aware UTC datetime.

    - None / "" -> None
    - trailing "Z" is accepted
    - naive strings are interpreted as UTC
    """
    if not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
