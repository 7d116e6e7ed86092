"""
muster.services.voice_service — Temporary Voice Channel Lifecycle
==================================================================

Events with ``voice_channel_enabled`` get a voice channel shortly before
they start and lose it after they end:

- **create** at ``start − create_before`` (event override, else guild
  default) while the event is scheduled or active;
- **delete** at ``start + duration + voice_post_event_minutes``, or right
  away when the event is cancelled or soft-deleted.

Restricted channels deny ``@everyone`` and admit confirmed participants
only.  The channel id is written with ``UPDATE … WHERE voice_channel_id IS
NULL``; if an overlapping tick already attached a channel, the duplicate
we just created is deleted again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from muster.constants import VOICE_CHANNEL_NAME_MAX
from muster.database.engine import get_session, run_db
from muster.database.models import Event, EventStatus, Participant, ParticipantStatus
from muster.engine.timing import as_utc, utcnow, voice_delete_time
from muster.engine.voice_state import Created, Scheduled, voice_state_of
from muster.services.exceptions import MusterError, NotFoundError, ValidationError
from muster.services.guild_config_service import GuildConfig, load_guild_config

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.gateway import MessagingGateway

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (EventStatus.SCHEDULED.value, EventStatus.ACTIVE.value)


@dataclass(frozen=True, slots=True)
class VoiceTarget:
    event: Event
    guild: GuildConfig
    confirmed_user_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class VoiceReport:
    created: int = 0
    deleted: int = 0


def voice_channel_name(event: Event) -> str:
    """Configured channel name, else the event title, capped at 50 characters."""
    name = event.voice_channel_name or event.title
    if len(name) > VOICE_CHANNEL_NAME_MAX:
        name = name[: VOICE_CHANNEL_NAME_MAX - 3] + "..."
    return name


# ---------------------------------------------------------------------------
# DB helpers (sync — call via run_db)
# ---------------------------------------------------------------------------
def _confirmed_ids(session: Session, event_id: int) -> list[int]:
    return list(session.scalars(
        select(Participant.user_id).where(
            Participant.event_id == event_id,
            Participant.status == ParticipantStatus.CONFIRMED.value,
        ).order_by(Participant.joined_at)
    ).all())


def voice_targets(engine: Engine) -> list[VoiceTarget]:
    """Events that may need a voice channel created or deleted."""
    with Session(engine) as session:
        events = session.scalars(
            select(Event).where(
                Event.voice_channel_deleted_at.is_(None),
                or_(
                    # Live channels are checked even after the event is soft-deleted
                    Event.voice_channel_id.isnot(None),
                    and_(
                        Event.deleted_at.is_(None),
                        Event.voice_channel_enabled.is_(True),
                        Event.status.in_(_OPEN_STATUSES),
                    ),
                ),
            ).order_by(Event.start_time)
        ).all()
        targets = [
            VoiceTarget(
                event=event,
                guild=load_guild_config(session, event.guild_id),
                confirmed_user_ids=_confirmed_ids(session, event.id),
            )
            for event in events
        ]
        session.expunge_all()
    return targets


def load_voice_target(engine: Engine, event_id: int) -> VoiceTarget:
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event")
        target = VoiceTarget(
            event=event,
            guild=load_guild_config(session, event.guild_id),
            confirmed_user_ids=_confirmed_ids(session, event_id),
        )
        session.expunge_all()
    return target


def attach_voice_channel(
    engine: Engine, event_id: int, channel_id: int, now: datetime, delete_at: datetime
) -> bool:
    """Record a created channel.  ``False`` if the event already has one."""
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(
                Event.id == event_id,
                Event.voice_channel_id.is_(None),
                Event.voice_channel_deleted_at.is_(None),
            )
            .values(
                voice_channel_id=channel_id,
                voice_channel_created_at=now,
                voice_channel_delete_at=delete_at,
            )
        )
        return result.rowcount == 1


def detach_voice_channel(engine: Engine, event_id: int, channel_id: int, now: datetime) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.voice_channel_id == channel_id)
            .values(voice_channel_id=None, voice_channel_deleted_at=now)
        )
        return result.rowcount == 1


def extend_voice_channel(
    engine: Engine, event_id: int, minutes: int, now: datetime | None = None
) -> datetime:
    """Push the channel's deletion time back by *minutes*.  Returns the new time."""
    if minutes <= 0:
        raise ValidationError("Extension must be a positive number of minutes.")
    now = now or utcnow()
    with get_session(engine) as session:
        event = session.scalar(select(Event).where(Event.id == event_id).with_for_update())
        if event is None:
            raise NotFoundError("Event")
        cfg = load_guild_config(session, event.guild_id)
        state = voice_state_of(event, cfg.voice_create_before_minutes)
        if not isinstance(state, Created):
            raise ValidationError("This event has no active voice channel.")

        base = state.delete_at or now
        new_delete_at = base + timedelta(minutes=minutes)
        event.voice_channel_delete_at = new_delete_at
    logger.info("Voice channel of event %d extended by %d min", event_id, minutes)
    return as_utc(new_delete_at)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class VoiceChannelManager:
    def __init__(self, engine: Engine, gateway: MessagingGateway) -> None:
        self.engine = engine
        self.gateway = gateway

    async def run(self, now: datetime) -> VoiceReport:
        """Create due channels and delete expired ones."""
        report = VoiceReport()
        for target in await run_db(voice_targets, self.engine):
            try:
                outcome = await self._step(target, now)
            except Exception:
                logger.exception("Voice channel check failed for event %d", target.event.id)
                continue
            if outcome == "created":
                report.created += 1
            elif outcome == "deleted":
                report.deleted += 1
        return report

    async def _step(self, target: VoiceTarget, now: datetime) -> str | None:
        event = target.event
        state = voice_state_of(event, target.guild.voice_create_before_minutes)

        if isinstance(state, Scheduled):
            if now >= state.at and event.status in _OPEN_STATUSES and event.deleted_at is None:
                return "created" if await self._create(target, now) else None
        elif isinstance(state, Created):
            expired = state.delete_at is not None and now >= state.delete_at
            gone = event.deleted_at is not None or event.status == EventStatus.CANCELLED.value
            if expired or gone:
                deleted = await self._delete(event.id, state.external_id, now)
                return "deleted" if deleted else None
        return None

    async def _create(self, target: VoiceTarget, now: datetime) -> bool:
        event = target.event
        delete_at = voice_delete_time(
            event.start_time, event.duration, target.guild.voice_post_event_minutes
        )
        if now >= delete_at:
            # Too late to be useful
            return False
        if target.guild.voice_category_id is None:
            logger.warning(
                "No voice category configured for guild %d; skipping event %d",
                event.guild_id, event.id,
            )
            return False

        allowed = target.confirmed_user_ids if event.voice_channel_restricted else None
        try:
            channel_id = await self.gateway.create_voice_channel(
                event.guild_id,
                name=voice_channel_name(event),
                category_id=target.guild.voice_category_id,
                allowed_user_ids=allowed or None,
            )
        except MusterError as exc:
            logger.warning("Voice channel for event %d not created: %s", event.id, exc.message)
            return False

        if not await run_db(attach_voice_channel, self.engine, event.id, channel_id, now, delete_at):
            logger.info(
                "Event %d already has a voice channel; removing duplicate %d", event.id, channel_id
            )
            await self.gateway.delete_channel(channel_id, reason="Duplicate event voice channel")
            return False

        logger.info(
            "Created voice channel %d for event %d (delete at %s)",
            channel_id, event.id, delete_at.isoformat(),
        )
        return True

    async def _delete(self, event_id: int, channel_id: int, now: datetime) -> bool:
        try:
            await self.gateway.delete_channel(channel_id, reason="Event voice channel expired")
        except MusterError as exc:
            logger.warning("Voice channel %d not deleted yet: %s", channel_id, exc.message)
            return False
        detached = await run_db(detach_voice_channel, self.engine, event_id, channel_id, now)
        if detached:
            logger.info("Deleted voice channel %d of event %d", channel_id, event_id)
        return detached

    async def extend(self, event_id: int, minutes: int) -> datetime:
        return await run_db(extend_voice_channel, self.engine, event_id, minutes)

    async def release(self, event_id: int, now: datetime | None = None) -> bool:
        """Delete the event's voice channel immediately, if it has one.

        Raises :class:`ExternalGatewayError` when Discord refuses the delete.
        """
        now = now or utcnow()
        target = await run_db(load_voice_target, self.engine, event_id)
        state = voice_state_of(target.event, target.guild.voice_create_before_minutes)
        if not isinstance(state, Created):
            return False
        await self.gateway.delete_channel(state.external_id, reason="Event cancelled")
        return await run_db(detach_voice_channel, self.engine, event_id, state.external_id, now)
