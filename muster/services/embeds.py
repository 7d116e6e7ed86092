"""
muster.services.embeds — Discord embed builders for events
===========================================================

All embed construction lives here so the lifecycle services only supply
data — no layout concerns.  Builders are pure: they take ORM rows that are
already loaded and never touch the database.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import discord

from muster.constants import (
    ARCHIVE_COLOR,
    EMBED_FIELD_MAX,
    LEADERBOARD_MEDALS,
    REMINDER_COLOR,
    SCORE_WEIGHTS,
    STATS_COLOR,
    STATUS_COLORS,
    STATUS_LABELS,
)
from muster.database.models import Event, Participant
from muster.engine.timing import as_utc


def discord_timestamp(value, style: str = "F") -> str:
    """Render a datetime as a Discord ``<t:…>`` tag."""
    return f"<t:{int(as_utc(value).timestamp())}:{style}>"


def _clip(text: str) -> str:
    if len(text) <= EMBED_FIELD_MAX:
        return text
    return text[: EMBED_FIELD_MAX - 3] + "..."


def _format_duration(minutes: int) -> str:
    hours, rest = divmod(minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours} h")
    if rest:
        parts.append(f"{rest} min")
    return " ".join(parts) or "0 min"


def _entry(participant: Participant) -> str:
    spec = f" ({participant.spec})" if participant.spec else ""
    return f"<@{participant.user_id}>{spec}"


def build_event_embed(
    event: Event,
    confirmed: Sequence[Participant],
    waitlist: Sequence[Participant] = (),
    pending: Sequence[Participant] = (),
) -> discord.Embed:
    """Build the signup embed shown on the event message."""
    embed = discord.Embed(
        title=event.title,
        description=event.description or "No description provided",
        color=STATUS_COLORS.get(event.status, STATUS_COLORS["scheduled"]),
    )
    embed.add_field(
        name="\U0001f4c5 Start Time",   # 📅
        value=f"{discord_timestamp(event.start_time)} ({discord_timestamp(event.start_time, 'R')})",
        inline=True,
    )
    if event.duration:
        embed.add_field(
            name="⏱️ Duration", value=_format_duration(event.duration), inline=True
        )
    embed.add_field(
        name="\U0001f4ca Status",   # 📊
        value=STATUS_LABELS.get(event.status, event.status.title()),
        inline=True,
    )
    if event.created_by:
        embed.add_field(name="Leader", value=f"<@{event.created_by}>", inline=True)

    role_limits = event.role_limits or {}
    if role_limits:
        groups: dict[str, list[str]] = {role: [] for role in role_limits}
        for p in confirmed:
            groups.setdefault(p.role or "Unknown", []).append(_entry(p))
        for role, members in groups.items():
            limit = role_limits.get(role) or "∞"
            embed.add_field(
                name=f"{role} ({len(members)}/{limit})",
                value=_clip("\n".join(members)) if members else "_No signups yet_",
                inline=True,
            )
    else:
        cap = event.max_participants or "∞"
        listing = "\n".join(f"{i}. {_entry(p)}" for i, p in enumerate(confirmed, start=1))
        embed.add_field(
            name=f"\U0001f465 Participants ({len(confirmed)}/{cap})",   # 👥
            value=_clip(listing) if listing else "_No signups yet_",
            inline=False,
        )

    if waitlist:
        listing = "\n".join(f"{p.position}. <@{p.user_id}>" for p in waitlist)
        embed.add_field(
            name=f"⏳ Waitlist ({len(waitlist)})",
            value=_clip(listing),
            inline=False,
        )

    if pending:
        listing = "\n".join(f"• <@{p.user_id}>" for p in pending)
        embed.add_field(
            name=f"\U0001f552 Pending approval ({len(pending)})",   # 🕒
            value=_clip(listing),
            inline=False,
        )

    if event.voice_channel_id:
        embed.add_field(name="\U0001f50a Voice", value=f"<#{event.voice_channel_id}>", inline=True)

    embed.set_footer(text=f"Event #{event.id}")
    return embed


def build_reminder_embed(event: Event, participant_count: int) -> discord.Embed:
    """Build the "starting soon" reminder embed."""
    embed = discord.Embed(
        title=f"⏰ Event Reminder: {event.title}",
        description=f"The event starts {discord_timestamp(event.start_time, 'R')}!",
        color=REMINDER_COLOR,
    )
    embed.add_field(name="Participants", value=f"{participant_count} signed up", inline=True)
    return embed


def build_archive_embed(event: Event, attendees: Sequence[Participant]) -> discord.Embed:
    """Build the summary posted to the guild's archive channel."""
    embed = discord.Embed(
        title=f"\U0001f4e6 Archived Event: {event.title}",   # 📦
        description=event.description or "No description",
        color=ARCHIVE_COLOR,
    )
    embed.add_field(name="Started", value=discord_timestamp(event.start_time), inline=True)
    embed.add_field(name="Participants", value=str(len(attendees)), inline=True)
    if attendees:
        embed.add_field(
            name="Attendees",
            value=_clip(", ".join(p.username for p in attendees)),
            inline=False,
        )
    return embed


def build_stats_embed(
    leaderboard: Sequence[dict], min_events: int, updated_at: datetime
) -> discord.Embed:
    """Build the guild leaderboard kept up to date in the stats channel.

    *leaderboard* holds the rows of
    :func:`~muster.services.statistics_service.refresh_leaderboard`.
    """
    embed = discord.Embed(
        title="\U0001f3c6 Event Participation Leaderboard",   # 🏆
        color=STATS_COLOR,
        timestamp=as_utc(updated_at),
    )
    embed.set_footer(text=f"Min. {min_events} events to qualify • Last updated")

    if not leaderboard:
        embed.add_field(
            name="No participants yet",
            value=f"Complete at least {min_events} events to appear on the leaderboard!",
            inline=False,
        )
        return embed

    lines = []
    for position, row in enumerate(leaderboard, start=1):
        if position <= len(LEADERBOARD_MEDALS):
            badge = LEADERBOARD_MEDALS[position - 1]
        else:
            badge = f"**{position}.**"
        lines.append(
            f"{badge} <@{row['user_id']}> **{row['total_completed']}** completed"
            f" • {row['total_no_shows']} no-shows • {row['score']} pts"
        )
    embed.add_field(name="Top members", value=_clip("\n".join(lines)), inline=False)
    embed.add_field(
        name="Scoring",
        value=(
            f"+{SCORE_WEIGHTS['completed']} per completed event, "
            f"{SCORE_WEIGHTS['no_show']} per no-show"
        ),
        inline=False,
    )
    return embed
