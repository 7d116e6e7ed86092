"""
muster.services.lifecycle_service — Event State Machine
========================================================

Events only ever move forward::

    scheduled ──start──▶ active ──start+max(1h, duration)──▶ completed ──auto-delete──▶ (deleted_at)
        │                  │
        └──── cancel ──────┴──▶ cancelled

Every transition is a conditional ``UPDATE … WHERE status = <from>``.  A
tick that retries, or two ticks that overlap, can therefore never apply a
transition twice or move an event backwards: whoever loses the race sees
``rowcount == 0`` and skips the side effects.

Side effects (message edits, archive posts, thread and voice-channel
deletion) run **after** the transition commits.  Their failures are
logged and never roll the transition back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from muster.constants import MIN_ACTIVE_PERIOD
from muster.database.engine import get_session, run_db
from muster.database.models import (
    Event,
    EventStatus,
    GuildSettings,
    Participant,
    ParticipantStatus,
    Reminder,
)
from muster.engine.timing import activation_due, archive_due, as_utc, deletion_due, utcnow
from muster.services.audit_service import log_action
from muster.services.embeds import build_archive_embed
from muster.services.exceptions import MusterError, NotFoundError, ValidationError
from muster.services.guild_config_service import load_guild_config
from muster.services.statistics_service import apply_completion

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.event_message import EventMessageRenderer
    from muster.services.gateway import MessagingGateway
    from muster.services.voice_service import VoiceChannelManager

logger = logging.getLogger(__name__)

SCHEDULED = EventStatus.SCHEDULED.value
ACTIVE = EventStatus.ACTIVE.value
COMPLETED = EventStatus.COMPLETED.value
CANCELLED = EventStatus.CANCELLED.value


@dataclass(frozen=True, slots=True)
class CompletionOutcome:
    """What the post-commit side effects of a completion need to know."""
    event_id: int
    archive_channel_id: int | None
    thread_id: int | None
    delete_thread: bool
    archive_event: Event
    attendees: list[Participant] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def schedule_event(
    engine: Engine,
    *,
    guild_id: int,
    channel_id: int,
    title: str,
    start_time: datetime,
    created_by: int | None = None,
    now: datetime | None = None,
    **options,
) -> Event:
    """Insert a new ``scheduled`` event.

    Channels listed in the guild's ``approval_channel_ids`` force
    ``require_approval``.  Remaining keyword arguments map straight onto
    :class:`Event` columns (``duration``, ``max_participants``,
    ``role_limits`` …).
    """
    now = now or utcnow()
    if not title or not title.strip():
        raise ValidationError("Event title must not be empty.")
    if as_utc(start_time) <= now:
        raise ValidationError("Event start time must be in the future.")
    if options.get("duration") is not None and options["duration"] <= 0:
        raise ValidationError("Duration must be a positive number of minutes.")
    if options.get("max_participants") is not None and options["max_participants"] <= 0:
        raise ValidationError("Maximum participants must be positive.")

    unknown = set(options) - set(Event.__table__.columns.keys())
    if unknown:
        raise ValidationError(f"Unknown event option(s): {', '.join(sorted(unknown))}")

    with get_session(engine) as session:
        cfg = load_guild_config(session, guild_id)
        if channel_id in cfg.approval_channel_ids:
            options["require_approval"] = True

        event = Event(
            guild_id=guild_id,
            channel_id=channel_id,
            title=title.strip(),
            start_time=as_utc(start_time),
            created_by=created_by,
            status=SCHEDULED,
            **options,
        )
        session.add(event)
        session.flush()
        log_action(
            session,
            guild_id=guild_id,
            event_id=event.id,
            action="create_event",
            user_id=created_by,
            details={"title": event.title, "require_approval": bool(event.require_approval)},
            at=now,
        )
        session.expunge(event)

    logger.info("Scheduled event %d (%r) in guild %d", event.id, event.title, guild_id)
    return event


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------
def due_for_activation(engine: Engine, now: datetime) -> list[int]:
    with Session(engine) as session:
        rows = session.execute(
            select(Event.id, Event.start_time).where(
                Event.status == SCHEDULED,
                Event.start_time <= now,
                Event.deleted_at.is_(None),
            ).order_by(Event.start_time)
        ).all()
    return [r.id for r in rows if activation_due(r.start_time, now)]


def activate_event(engine: Engine, event_id: int, now: datetime) -> bool:
    """``scheduled → active``.  Returns ``False`` if another run got there first."""
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.status == SCHEDULED, Event.start_time <= now)
            .values(status=ACTIVE)
        )
        if result.rowcount != 1:
            return False
        guild_id = session.scalar(select(Event.guild_id).where(Event.id == event_id))
        log_action(session, guild_id=guild_id, event_id=event_id, action="event_started", at=now)
    return True


def reminder_messages(engine: Engine, event_id: int) -> list[tuple[str, int, int]]:
    """``(interval, channel_id, message_id)`` for reminders still on screen."""
    with Session(engine) as session:
        rows = session.execute(
            select(Reminder.interval, Reminder.channel_id, Reminder.message_id).where(
                Reminder.event_id == event_id,
                Reminder.message_id.isnot(None),
                Reminder.channel_id.isnot(None),
            )
        ).all()
        return [(r.interval, r.channel_id, r.message_id) for r in rows]


def clear_reminder_message(engine: Engine, event_id: int, interval: str) -> None:
    """Forget a deleted reminder message; the row itself stays as the send guard."""
    with get_session(engine) as session:
        session.execute(
            update(Reminder)
            .where(Reminder.event_id == event_id, Reminder.interval == interval)
            .values(message_id=None)
        )


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------
def due_for_archiving(engine: Engine, now: datetime) -> list[int]:
    with Session(engine) as session:
        rows = session.execute(
            select(Event.id, Event.start_time, Event.duration).where(
                Event.status == ACTIVE,
                Event.start_time <= now - MIN_ACTIVE_PERIOD,
                Event.deleted_at.is_(None),
            ).order_by(Event.start_time)
        ).all()
    return [r.id for r in rows if archive_due(r.start_time, r.duration, now)]


def complete_event(engine: Engine, event_id: int, now: datetime) -> CompletionOutcome | None:
    """``active → completed`` with statistics, atomically.

    The status flip, the ``archived_at`` stamp, every participant's counters
    and the guild's ranks commit together or not at all.
    """
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.status == ACTIVE)
            .values(status=COMPLETED, archived_at=now)
        )
        if result.rowcount != 1:
            return None

        event = session.get(Event, event_id)
        apply_completion(session, event, now)
        cfg = load_guild_config(session, event.guild_id)

        attendees = list(session.scalars(
            select(Participant).where(
                Participant.event_id == event_id,
                Participant.status == ParticipantStatus.CONFIRMED.value,
                Participant.no_show.is_(False),
            ).order_by(Participant.joined_at)
        ).all())
        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action="event_completed",
            details={"attendees": len(attendees)},
            at=now,
        )
        outcome = CompletionOutcome(
            event_id=event_id,
            archive_channel_id=cfg.archive_channel_id,
            thread_id=event.thread_id,
            delete_thread=bool(event.delete_thread),
            archive_event=event,
            attendees=attendees,
        )
        session.flush()
        session.expunge_all()
    return outcome


# ---------------------------------------------------------------------------
# Soft deletion
# ---------------------------------------------------------------------------
def due_for_deletion(engine: Engine, now: datetime) -> list[tuple[int, int, int | None]]:
    """``(event_id, channel_id, message_id)`` of archived events past auto-delete."""
    with Session(engine) as session:
        rows = session.execute(
            select(
                Event.id, Event.channel_id, Event.message_id,
                Event.archived_at, GuildSettings.auto_delete_hours,
            )
            .join(GuildSettings, GuildSettings.guild_id == Event.guild_id)
            .where(
                Event.status == COMPLETED,
                Event.archived_at.isnot(None),
                Event.deleted_at.is_(None),
                GuildSettings.auto_delete_hours.isnot(None),
            )
        ).all()
    return [
        (r.id, r.channel_id, r.message_id)
        for r in rows
        if deletion_due(r.archived_at, r.auto_delete_hours, now)
    ]


def mark_deleted(engine: Engine, event_id: int, now: datetime) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.deleted_at.is_(None))
            .values(deleted_at=now)
        )
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------
def cancel_event(
    engine: Engine,
    event_id: int,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> None:
    """``scheduled|active → cancelled``.

    Raises
    ------
    NotFoundError
        Unknown event.
    ValidationError
        The event already completed or was cancelled.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None or event.deleted_at is not None:
            raise NotFoundError("Event")
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.status.in_((SCHEDULED, ACTIVE)))
            .values(status=CANCELLED)
        )
        if result.rowcount != 1:
            raise ValidationError("Only scheduled or active events can be cancelled.")
        log_action(
            session, guild_id=event.guild_id, event_id=event_id,
            action="cancel_event", user_id=actor_id, at=now,
        )
    logger.info("Event %d cancelled by %s", event_id, actor_id)


# ---------------------------------------------------------------------------
# Async driver
# ---------------------------------------------------------------------------
class EventLifecycle:
    """Runs the time-gated transitions and their Discord side effects."""

    def __init__(
        self,
        engine: Engine,
        gateway: MessagingGateway,
        renderer: EventMessageRenderer,
        voice: VoiceChannelManager | None = None,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.renderer = renderer
        self.voice = voice

    async def _refresh(self, event_id: int) -> None:
        try:
            await self.renderer.refresh(event_id)
        except MusterError as exc:
            logger.warning("Could not refresh message for event %d: %s", event_id, exc.message)

    # -- user-facing --------------------------------------------------------
    async def schedule(self, **kwargs) -> Event:
        """Create an event and post its signup message."""
        event = await run_db(schedule_event, self.engine, **kwargs)
        try:
            await self.renderer.publish(event.id)
        except MusterError as exc:
            logger.warning("Could not publish event %d: %s", event.id, exc.message)
        return event

    async def cancel(self, event_id: int, actor_id: int | None = None) -> None:
        await run_db(cancel_event, self.engine, event_id, actor_id)
        if self.voice is not None:
            try:
                await self.voice.release(event_id)
            except MusterError as exc:
                logger.warning(
                    "Voice channel for cancelled event %d not released: %s", event_id, exc.message
                )
        await self._refresh(event_id)

    # -- scheduler steps ----------------------------------------------------
    async def run_activation(self, now: datetime) -> int:
        """Activate every scheduled event whose start has passed."""
        activated = 0
        for event_id in await run_db(due_for_activation, self.engine, now):
            try:
                if not await run_db(activate_event, self.engine, event_id, now):
                    continue
                activated += 1
                logger.info("Event %d is now active", event_id)
                await self._delete_reminders(event_id)
                await self._refresh(event_id)
            except Exception:
                logger.exception("Activation failed for event %d", event_id)
        return activated

    async def _delete_reminders(self, event_id: int) -> None:
        for interval, channel_id, message_id in await run_db(reminder_messages, self.engine, event_id):
            try:
                await self.gateway.delete_message(channel_id, message_id)
                await run_db(clear_reminder_message, self.engine, event_id, interval)
            except MusterError as exc:
                logger.warning(
                    "Could not delete %s reminder for event %d: %s", interval, event_id, exc.message
                )

    async def run_archiving(self, now: datetime) -> int:
        """Complete every active event past its archive time."""
        completed = 0
        for event_id in await run_db(due_for_archiving, self.engine, now):
            try:
                outcome = await run_db(complete_event, self.engine, event_id, now)
                if outcome is None:
                    continue
                completed += 1
                logger.info("Event %d completed", event_id)
                await self._after_completion(outcome)
            except Exception:
                logger.exception("Archiving failed for event %d", event_id)
        return completed

    async def _after_completion(self, outcome: CompletionOutcome) -> None:
        await self._refresh(outcome.event_id)

        if outcome.archive_channel_id:
            try:
                await self.gateway.send_message(
                    outcome.archive_channel_id,
                    embed=build_archive_embed(outcome.archive_event, outcome.attendees),
                )
            except MusterError as exc:
                logger.warning(
                    "Archive post for event %d failed: %s", outcome.event_id, exc.message
                )

        if outcome.delete_thread and outcome.thread_id:
            try:
                await self.gateway.delete_channel(
                    outcome.thread_id, reason="Event completed and thread deletion enabled"
                )
                logger.info("Deleted thread %d of event %d", outcome.thread_id, outcome.event_id)
            except MusterError as exc:
                logger.warning(
                    "Thread deletion for event %d failed: %s", outcome.event_id, exc.message
                )

    async def run_deletion(self, now: datetime) -> int:
        """Remove messages of archived events past the guild's auto-delete window.

        The row is only stamped ``deleted_at`` once the message is gone, so a
        failed delete is retried on the next tick.
        """
        deleted = 0
        for event_id, channel_id, message_id in await run_db(due_for_deletion, self.engine, now):
            try:
                if message_id is not None:
                    await self.gateway.delete_message(channel_id, message_id)
                if await run_db(mark_deleted, self.engine, event_id, now):
                    deleted += 1
                    logger.info("Event %d message deleted", event_id)
            except MusterError as exc:
                logger.warning("Deletion of event %d postponed: %s", event_id, exc.message)
            except Exception:
                logger.exception("Deletion failed for event %d", event_id)
        return deleted
