"""
muster.services.guild_config_service — Guild Settings Reads
============================================================

The lifecycle engine never writes guild settings; it reads them as an
immutable :class:`GuildConfig` snapshot.  A guild with no
``guild_settings`` row gets the defaults below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from muster.constants import (
    DEFAULT_REMINDER_INTERVALS,
    DEFAULT_STATS_INTERVAL_HOURS,
    DEFAULT_STATS_MIN_EVENTS,
    DEFAULT_STATS_TOP_COUNT,
    DEFAULT_VOICE_CREATE_BEFORE_MINUTES,
    DEFAULT_VOICE_POST_EVENT_MINUTES,
)
from muster.database.models import GuildSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GuildConfig:
    guild_id: int
    reminder_intervals: tuple[str, ...] = DEFAULT_REMINDER_INTERVALS
    dm_reminders: bool = False
    auto_delete_hours: int | None = None
    approval_channel_ids: frozenset[int] = field(default_factory=frozenset)
    archive_channel_id: int | None = None
    voice_category_id: int | None = None
    voice_create_before_minutes: int = DEFAULT_VOICE_CREATE_BEFORE_MINUTES
    voice_post_event_minutes: int = DEFAULT_VOICE_POST_EVENT_MINUTES
    stats_min_events: int = DEFAULT_STATS_MIN_EVENTS
    log_retention_days: int | None = None
    stats_channel_id: int | None = None
    stats_interval_hours: int = DEFAULT_STATS_INTERVAL_HOURS
    stats_top_role_id: int | None = None
    stats_top_count: int = DEFAULT_STATS_TOP_COUNT


def _from_row(row: GuildSettings) -> GuildConfig:
    intervals = row.reminder_intervals
    return GuildConfig(
        guild_id=row.guild_id,
        reminder_intervals=(
            tuple(str(i) for i in intervals) if intervals is not None
            else DEFAULT_REMINDER_INTERVALS
        ),
        dm_reminders=bool(row.dm_reminders),
        auto_delete_hours=row.auto_delete_hours,
        approval_channel_ids=frozenset(int(c) for c in (row.approval_channel_ids or [])),
        archive_channel_id=row.archive_channel_id,
        voice_category_id=row.voice_category_id,
        voice_create_before_minutes=(
            row.voice_create_before_minutes
            if row.voice_create_before_minutes is not None
            else DEFAULT_VOICE_CREATE_BEFORE_MINUTES
        ),
        voice_post_event_minutes=(
            row.voice_post_event_minutes
            if row.voice_post_event_minutes is not None
            else DEFAULT_VOICE_POST_EVENT_MINUTES
        ),
        stats_min_events=(
            row.stats_min_events
            if row.stats_min_events is not None
            else DEFAULT_STATS_MIN_EVENTS
        ),
        log_retention_days=row.log_retention_days,
        stats_channel_id=row.stats_channel_id,
        stats_interval_hours=row.stats_interval_hours or DEFAULT_STATS_INTERVAL_HOURS,
        stats_top_role_id=row.stats_top_role_id,
        stats_top_count=row.stats_top_count or DEFAULT_STATS_TOP_COUNT,
    )


def load_guild_config(session: Session, guild_id: int) -> GuildConfig:
    """Read a guild's settings from an existing session."""
    row = session.get(GuildSettings, guild_id)
    if row is None:
        return GuildConfig(guild_id=guild_id)
    return _from_row(row)


def get_guild_config(engine, guild_id: int) -> GuildConfig:
    """Read a guild's settings in a short-lived session."""
    with Session(engine) as session:
        return load_guild_config(session, guild_id)
