"""
muster.constants — Shared Constants
====================================

Single source of truth for scheduler timing, scoring weights and
presentation constants.  Import from here instead of duplicating in cogs
and services.
"""

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------
# Scheduler timing
# ---------------------------------------------------------------------------
TICK_SECONDS = 60

# 1.5× the tick period: wide enough that a jittery tick still lands in the
# window, narrow enough that two ticks rarely both match.
REMINDER_TOLERANCE = timedelta(seconds=90)

# Only events starting within this horizon are considered for reminders
REMINDER_LOOKAHEAD = timedelta(hours=24)

# Events are never archived sooner than this after their start
MIN_ACTIVE_PERIOD = timedelta(hours=1)

DEFAULT_REMINDER_INTERVALS: tuple[str, ...] = ("1h", "15m")

# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------
SCORE_WEIGHTS: dict[str, int] = {
    "joined": 0,
    "completed": 3,
    "no_show": -2,
}

DEFAULT_STATS_MIN_EVENTS = 3

# Leaderboard message refresh and top-member role sync
STATS_PASS_INTERVAL = timedelta(hours=1)
DEFAULT_STATS_INTERVAL_HOURS = 24
DEFAULT_STATS_TOP_COUNT = 10

# ---------------------------------------------------------------------------
# Voice channels
# ---------------------------------------------------------------------------
DEFAULT_VOICE_CREATE_BEFORE_MINUTES = 30
DEFAULT_VOICE_POST_EVENT_MINUTES = 60
VOICE_CHANNEL_NAME_MAX = 50

# ---------------------------------------------------------------------------
# Embed presentation
# ---------------------------------------------------------------------------
STATUS_COLORS: dict[str, int] = {
    "scheduled": 0x5865F2,
    "active": 0x57F287,
    "completed": 0x808080,
    "cancelled": 0xED4245,
}

STATUS_LABELS: dict[str, str] = {
    "scheduled": "\U0001f4c5 Scheduled",   # 📅
    "active": "\U0001f7e2 In progress",    # 🟢
    "completed": "✅ Completed",       # ✅
    "cancelled": "❌ Cancelled",       # ❌
}

REMINDER_COLOR = 0xFFAA00
ARCHIVE_COLOR = 0x808080
STATS_COLOR = 0x5865F2
LEADERBOARD_MEDALS = ("\U0001f947", "\U0001f948", "\U0001f949")   # 🥇🥈🥉

# Discord embed field value limit
EMBED_FIELD_MAX = 1024
