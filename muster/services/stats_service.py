"""
muster.services.stats_service — Leaderboard Channel & Top-Member Role
======================================================================

Guilds can opt into two statistics side effects, both driven by the
scheduler at most once an hour:

- **leaderboard message** in ``stats_channel_id``: ranks are recalculated
  and the message is edited in place once ``stats_interval_hours`` have
  passed since the last refresh.  If the old message cannot be edited a
  new one is posted and its id stored.
- **top-member role** ``stats_top_role_id``: held by exactly the
  ``stats_top_count`` best-scoring qualified members.  Members who climb
  into the top get it, members who drop out lose it.

One guild's failure is logged and never blocks the next guild.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from muster.database.engine import get_session, run_db
from muster.database.models import GuildSettings
from muster.engine.timing import stats_refresh_due, utcnow
from muster.services.embeds import build_stats_embed
from muster.services.exceptions import MusterError, ValidationError
from muster.services.guild_config_service import GuildConfig, load_guild_config
from muster.services.statistics_service import get_top_participants, refresh_leaderboard

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.gateway import MessagingGateway

logger = logging.getLogger(__name__)

LEADERBOARD_SIZE = 10


@dataclass(frozen=True, slots=True)
class StatsTarget:
    guild: GuildConfig
    message_id: int | None = None
    refreshed_at: datetime | None = None


@dataclass(slots=True)
class StatsReport:
    refreshed: int = 0
    roles_added: int = 0
    roles_removed: int = 0


# ---------------------------------------------------------------------------
# DB helpers (sync — call via run_db)
# ---------------------------------------------------------------------------
def _target(session: Session, row: GuildSettings) -> StatsTarget:
    return StatsTarget(
        guild=load_guild_config(session, row.guild_id),
        message_id=row.stats_message_id,
        refreshed_at=row.stats_refreshed_at,
    )


def stats_targets(engine: Engine) -> list[StatsTarget]:
    """Guilds with a leaderboard channel or a top-member role configured."""
    with Session(engine) as session:
        rows = session.scalars(
            select(GuildSettings).where(
                or_(
                    GuildSettings.stats_channel_id.isnot(None),
                    GuildSettings.stats_top_role_id.isnot(None),
                )
            ).order_by(GuildSettings.guild_id)
        ).all()
        return [_target(session, row) for row in rows]


def load_stats_target(engine: Engine, guild_id: int) -> StatsTarget | None:
    with Session(engine) as session:
        row = session.get(GuildSettings, guild_id)
        return _target(session, row) if row is not None else None


def store_stats_message(engine: Engine, guild_id: int, message_id: int, now: datetime) -> None:
    with get_session(engine) as session:
        session.execute(
            update(GuildSettings)
            .where(GuildSettings.guild_id == guild_id)
            .values(stats_message_id=message_id, stats_refreshed_at=now)
        )


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------
class StatsPublisher:
    """Keeps each guild's leaderboard message and top-member role current."""

    def __init__(self, engine: Engine, gateway: MessagingGateway) -> None:
        self.engine = engine
        self.gateway = gateway

    async def run(self, now: datetime) -> StatsReport:
        report = StatsReport()
        for target in await run_db(stats_targets, self.engine):
            guild = target.guild
            try:
                if guild.stats_channel_id is not None and stats_refresh_due(
                    target.refreshed_at, guild.stats_interval_hours, now
                ):
                    await self.publish(target, now)
                    report.refreshed += 1
                if guild.stats_top_role_id is not None:
                    added, removed = await self.sync_top_role(guild)
                    report.roles_added += added
                    report.roles_removed += removed
            except Exception:
                logger.exception("Stats update failed for guild %d", guild.guild_id)
        return report

    async def refresh_guild(self, guild_id: int, now: datetime | None = None) -> StatsReport:
        """Refresh one guild right away, ignoring its refresh interval."""
        now = now or utcnow()
        target = await run_db(load_stats_target, self.engine, guild_id)
        if target is None or target.guild.stats_channel_id is None:
            raise ValidationError("Statistics are not configured for this guild.")

        report = StatsReport(refreshed=1)
        await self.publish(target, now)
        if target.guild.stats_top_role_id is not None:
            report.roles_added, report.roles_removed = await self.sync_top_role(target.guild)
        return report

    async def publish(self, target: StatsTarget, now: datetime) -> int:
        """Edit the leaderboard message, or post a new one.  Returns its id."""
        guild = target.guild
        leaderboard = await run_db(
            refresh_leaderboard, self.engine, guild.guild_id, LEADERBOARD_SIZE
        )
        embed = build_stats_embed(leaderboard, guild.stats_min_events, now)

        if target.message_id is not None:
            try:
                await self.gateway.edit_message(
                    guild.stats_channel_id, target.message_id, embed=embed
                )
            except MusterError as exc:
                logger.debug(
                    "Leaderboard message %d not editable (%s); posting a new one",
                    target.message_id, exc.message,
                )
            else:
                await run_db(
                    store_stats_message, self.engine, guild.guild_id, target.message_id, now
                )
                return target.message_id

        message_id = await self.gateway.send_message(guild.stats_channel_id, embed=embed)
        await run_db(store_stats_message, self.engine, guild.guild_id, message_id, now)
        logger.info("Posted leaderboard for guild %d (message %d)", guild.guild_id, message_id)
        return message_id

    async def sync_top_role(self, guild: GuildConfig) -> tuple[int, int]:
        """Give the role to the current top members and take it from the rest.

        Returns ``(added, removed)``.  A member the role cannot be changed
        for is skipped and retried on the next pass.
        """
        role_id = guild.stats_top_role_id
        top = await run_db(
            get_top_participants, self.engine, guild.guild_id, guild.stats_top_count
        )
        top_ids = {row["user_id"] for row in top}
        holders = await self.gateway.role_member_ids(guild.guild_id, role_id)

        added = removed = 0
        for user_id in sorted(top_ids - holders):
            try:
                await self.gateway.add_role(
                    guild.guild_id, user_id, role_id, reason="Muster: top participant"
                )
                added += 1
            except MusterError as exc:
                logger.debug("Could not add role %d to %d: %s", role_id, user_id, exc.message)
        for user_id in sorted(holders - top_ids):
            try:
                await self.gateway.remove_role(
                    guild.guild_id, user_id, role_id, reason="Muster: no longer a top participant"
                )
                removed += 1
            except MusterError as exc:
                logger.debug(
                    "Could not remove role %d from %d: %s", role_id, user_id, exc.message
                )

        if added or removed:
            logger.info(
                "Top-member role in guild %d: +%d/-%d", guild.guild_id, added, removed
            )
        return added, removed
