"""
core/clock.py -- Injectable time source and timestamp encoding.

Every expiry and window calculation in auth/ takes its "now" from a Clock so
tests can pin or advance time deterministically. Production code passes
nothing and gets utc_now.

Timestamps are persisted as ISO-8601 strings with a fixed microsecond
precision and an explicit +00:00 offset. The fixed width means lexical order
in SQL equals chronological order, so range filters can compare strings.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Encode an aware datetime as a fixed-width UTC ISO string."""
    if value.tzinfo is None:
        raise ValueError("naive datetime passed to to_iso(); use an aware UTC value")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
