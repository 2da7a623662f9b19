"""Clock abstraction.

Cascades, retention checks and audit timestamps all read time through a
Clock so that tests can pin "now".
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime read back from the store to aware UTC.

    SQLite returns naive datetimes even for timezone-aware columns; all
    values are written in UTC, so naive means UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
