"""
core/clock.py -- The single time source shared by every auth component.

Lockout windows, token expiry, session expiry and key age must all be judged
against the same clock. Components take a `clock` callable (defaulting to
utcnow) instead of calling datetime.now() themselves, so tests can substitute
a controllable clock and move time forward deterministically.

Timestamps are persisted as fixed-width ISO-8601 UTC strings. Fixed width
matters: SQL range predicates (expires_at <= :now) compare the strings
lexicographically, which only matches time order when every value has the
same shape.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as a fixed-width UTC ISO-8601 string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO-8601 string. Naive values are treated as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
