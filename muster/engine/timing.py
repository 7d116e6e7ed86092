"""
muster.engine.timing — Time Windows for the Lifecycle Engine
=============================================================

Pure functions answering "is it time yet?" for every time-gated
transition.  No database or Discord access, so each rule is unit-testable
with plain datetimes.

All comparisons happen in UTC.  SQLite hands back naive datetimes even for
``DateTime(timezone=True)`` columns, so values read from the database go
through :func:`as_utc` first.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from muster.constants import MIN_ACTIVE_PERIOD, REMINDER_LOOKAHEAD, REMINDER_TOLERANCE
from muster.services.exceptions import ValidationError

_INTERVAL_PART = re.compile(r"(\d+)([smhd])")
_INTERVAL_FULL = re.compile(r"(?:\d+[smhd])+")

_UNIT_SECONDS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_interval(text: str) -> timedelta:
    """Parse a lead-time string such as ``"1h"``, ``"30m"`` or ``"1h30m"``.

    Raises
    ------
    ValidationError
        If *text* is not a sequence of ``<int><unit>`` groups with unit in
        ``s/m/h/d``, or adds up to zero.
    """
    cleaned = text.strip().lower()
    if not _INTERVAL_FULL.fullmatch(cleaned):
        raise ValidationError(f"Malformed reminder interval: {text!r}")

    seconds = sum(
        int(value) * _UNIT_SECONDS[unit]
        for value, unit in _INTERVAL_PART.findall(cleaned)
    )
    if seconds <= 0:
        raise ValidationError(f"Reminder interval must be positive: {text!r}")
    return timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------
def in_reminder_horizon(start_time: datetime, now: datetime) -> bool:
    """True if the event starts between *now* and the 24h look-ahead."""
    start = as_utc(start_time)
    return now <= start <= now + REMINDER_LOOKAHEAD


def reminder_due(
    start_time: datetime,
    now: datetime,
    interval: timedelta,
    tolerance: timedelta = REMINDER_TOLERANCE,
) -> bool:
    """True when ``|(start - now) - interval| < tolerance``."""
    until_start = as_utc(start_time) - now
    return abs(until_start - interval) < tolerance


# ---------------------------------------------------------------------------
# Signups
# ---------------------------------------------------------------------------
def signup_deadline(start_time: datetime, deadline_hours: int | None) -> datetime | None:
    if deadline_hours is None:
        return None
    return as_utc(start_time) - timedelta(hours=deadline_hours)


# ---------------------------------------------------------------------------
# Event lifecycle
# ---------------------------------------------------------------------------
def activation_due(start_time: datetime, now: datetime) -> bool:
    return now >= as_utc(start_time)


def archive_time(start_time: datetime, duration_minutes: int | None) -> datetime:
    """When an active event becomes ``completed``.

    One hour after start at the earliest; later if the event runs longer.
    """
    start = as_utc(start_time)
    earliest = start + MIN_ACTIVE_PERIOD
    if not duration_minutes:
        return earliest
    return max(earliest, start + timedelta(minutes=duration_minutes))


def archive_due(start_time: datetime, duration_minutes: int | None, now: datetime) -> bool:
    return now >= archive_time(start_time, duration_minutes)


def deletion_due(
    archived_at: datetime | None,
    auto_delete_hours: int | None,
    now: datetime,
) -> bool:
    """True once an archived event has outlived the guild's auto-delete window."""
    if archived_at is None or auto_delete_hours is None:
        return False
    return now >= as_utc(archived_at) + timedelta(hours=auto_delete_hours)


# ---------------------------------------------------------------------------
# Voice channels
# ---------------------------------------------------------------------------
def voice_create_time(start_time: datetime, create_before_minutes: int) -> datetime:
    return as_utc(start_time) - timedelta(minutes=create_before_minutes)


def voice_delete_time(
    start_time: datetime,
    duration_minutes: int | None,
    post_event_minutes: int,
) -> datetime:
    """Start + duration + post-event buffer."""
    return as_utc(start_time) + timedelta(
        minutes=(duration_minutes or 0) + post_event_minutes
    )


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
def stats_refresh_due(refreshed_at: datetime | None, interval_hours: int, now: datetime) -> bool:
    """True if the leaderboard was never posted or is older than its interval."""
    if refreshed_at is None:
        return True
    return now >= as_utc(refreshed_at) + timedelta(hours=interval_hours)
