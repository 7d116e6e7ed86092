"""
muster.database.seed — Default Guild Settings Seeder
=====================================================

Gives the primary guild a ``guild_settings`` row on first startup so the
settings commands have something to edit.

Idempotent — an existing row is never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from muster.constants import (
    DEFAULT_REMINDER_INTERVALS,
    DEFAULT_STATS_MIN_EVENTS,
    DEFAULT_VOICE_CREATE_BEFORE_MINUTES,
    DEFAULT_VOICE_POST_EVENT_MINUTES,
)
from muster.database.models import GuildSettings

logger = logging.getLogger(__name__)


def seed_guild_settings(engine: Engine, guild_id: int) -> bool:
    """Insert the default settings row for *guild_id* if it is missing.

    Returns ``True`` if a row was created.
    """
    with Session(engine) as session:
        if session.get(GuildSettings, guild_id) is not None:
            return False

        session.add(GuildSettings(
            guild_id=guild_id,
            reminder_intervals=list(DEFAULT_REMINDER_INTERVALS),
            dm_reminders=False,
            approval_channel_ids=[],
            voice_create_before_minutes=DEFAULT_VOICE_CREATE_BEFORE_MINUTES,
            voice_post_event_minutes=DEFAULT_VOICE_POST_EVENT_MINUTES,
            stats_min_events=DEFAULT_STATS_MIN_EVENTS,
        ))
        session.commit()

    logger.info("Seeded default guild settings for guild %d", guild_id)
    return True
