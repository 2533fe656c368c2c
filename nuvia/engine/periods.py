"""
nuvia.engine.periods — Quest & leaderboard period windows
==========================================================

All windows are computed in UTC.

* ``daily``    — 00:00:00.000 → 23:59:59.999 of the same UTC day.
* ``weekly``   — Sunday 00:00:00.000 → Saturday 23:59:59.999 (UTC).
* ``one-time`` — a single fixed window, epoch → far future.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from nuvia.constants import ONE_TIME_PERIOD_END, ONE_TIME_PERIOD_START
from nuvia.database.models import QuestCadence

_LAST_MS = timedelta(milliseconds=1)


def _to_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return the UTC calendar day containing *now*."""
    start = _to_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1) - _LAST_MS


def week_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return the Sunday-to-Saturday UTC week containing *now*."""
    day_start, _ = day_bounds(now)
    # weekday(): Monday=0 … Sunday=6  →  days since Sunday
    days_since_sunday = (day_start.weekday() + 1) % 7
    start = day_start - timedelta(days=days_since_sunday)
    return start, start + timedelta(days=7) - _LAST_MS


def period_bounds(cadence: str, now: datetime) -> tuple[datetime, datetime]:
    """Dispatch on *cadence*; raises ``ValueError`` for unknown values."""
    cadence = QuestCadence(cadence)
    if cadence == QuestCadence.DAILY:
        return day_bounds(now)
    if cadence == QuestCadence.WEEKLY:
        return week_bounds(now)
    return ONE_TIME_PERIOD_START, ONE_TIME_PERIOD_END
