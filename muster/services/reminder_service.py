"""
muster.services.reminder_service — Reminder Dispatcher
=======================================================

Each tick looks at scheduled events starting within the next 24 hours and,
for every interval configured for the guild (``"1h"``, ``"15m"`` …),
checks whether ``|(start − now) − interval| < 90 s``.

**At most once per (event, interval).**  The ``reminders`` row is inserted
*before* anything is sent; its composite primary key is the claim.  A
second tick inside the same window finds the row and skips.  If the
channel post fails the claim is released so the next tick, still inside
the window, can try again.  DM failures never release the claim.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from muster.constants import REMINDER_LOOKAHEAD
from muster.database.engine import get_session, run_db
from muster.database.models import (
    Event,
    EventStatus,
    Participant,
    ParticipantStatus,
    Reminder,
)
from muster.engine.timing import in_reminder_horizon, parse_interval, reminder_due
from muster.services.embeds import build_reminder_embed
from muster.services.exceptions import MusterError, PersistenceError, ValidationError
from muster.services.guild_config_service import load_guild_config

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.gateway import MessagingGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReminderTarget:
    event: Event
    intervals: tuple[str, ...]
    dm_reminders: bool
    confirmed_user_ids: list[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# DB helpers (sync — call via run_db)
# ---------------------------------------------------------------------------
def reminder_targets(engine: Engine, now: datetime) -> list[ReminderTarget]:
    """Scheduled events inside the look-ahead window with their guild settings."""
    with Session(engine) as session:
        events = session.scalars(
            select(Event).where(
                Event.status == EventStatus.SCHEDULED.value,
                Event.start_time >= now,
                Event.start_time <= now + REMINDER_LOOKAHEAD,
                Event.deleted_at.is_(None),
            ).order_by(Event.start_time)
        ).all()

        targets = []
        for event in events:
            if not in_reminder_horizon(event.start_time, now):
                continue
            cfg = load_guild_config(session, event.guild_id)
            confirmed = session.scalars(
                select(Participant.user_id).where(
                    Participant.event_id == event.id,
                    Participant.status == ParticipantStatus.CONFIRMED.value,
                ).order_by(Participant.joined_at)
            ).all()
            targets.append(ReminderTarget(
                event=event,
                intervals=cfg.reminder_intervals,
                dm_reminders=cfg.dm_reminders,
                confirmed_user_ids=list(confirmed),
            ))
        session.expunge_all()
    return targets


def claim_reminder(
    engine: Engine, event_id: int, interval: str, channel_id: int, now: datetime
) -> bool:
    """Insert the guard row.  ``False`` means this reminder was already sent."""
    try:
        with get_session(engine) as session:
            if session.get(Reminder, (event_id, interval)) is not None:
                return False
            session.add(Reminder(
                event_id=event_id,
                interval=interval,
                channel_id=channel_id,
                sent_at=now,
            ))
    except PersistenceError as exc:
        # Lost the insert race to another tick
        if isinstance(exc.__cause__, IntegrityError):
            return False
        raise
    return True


def release_reminder(engine: Engine, event_id: int, interval: str) -> None:
    with get_session(engine) as session:
        session.execute(
            delete(Reminder).where(Reminder.event_id == event_id, Reminder.interval == interval)
        )


def record_reminder_message(engine: Engine, event_id: int, interval: str, message_id: int) -> None:
    with get_session(engine) as session:
        session.execute(
            update(Reminder)
            .where(Reminder.event_id == event_id, Reminder.interval == interval)
            .values(message_id=message_id)
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------
class ReminderDispatcher:
    def __init__(self, engine: Engine, gateway: MessagingGateway) -> None:
        self.engine = engine
        self.gateway = gateway

    async def run(self, now: datetime) -> int:
        """Send every reminder that is due.  Returns the number posted."""
        sent = 0
        for target in await run_db(reminder_targets, self.engine, now):
            try:
                sent += await self._process(target, now)
            except Exception:
                logger.exception("Reminder check failed for event %d", target.event.id)
        return sent

    async def _process(self, target: ReminderTarget, now: datetime) -> int:
        event = target.event
        sent = 0
        for interval in target.intervals:
            try:
                lead = parse_interval(interval)
            except ValidationError as exc:
                logger.warning("Guild %d: %s", event.guild_id, exc.message)
                continue

            if not reminder_due(event.start_time, now, lead):
                continue
            if not await run_db(claim_reminder, self.engine, event.id, interval, event.channel_id, now):
                logger.debug("Reminder %s for event %d already sent", interval, event.id)
                continue

            if await self._send(target, interval):
                sent += 1
        return sent

    async def _send(self, target: ReminderTarget, interval: str) -> bool:
        event = target.event
        mentions = " ".join(f"<@{uid}>" for uid in target.confirmed_user_ids)
        embed = build_reminder_embed(event, len(target.confirmed_user_ids))

        try:
            message_id = await self.gateway.send_message(
                event.channel_id,
                content=mentions or "No participants yet",
                embed=embed,
            )
        except MusterError as exc:
            await run_db(release_reminder, self.engine, event.id, interval)
            logger.warning(
                "Reminder %s for event %d not sent, will retry: %s", interval, event.id, exc.message
            )
            return False

        await run_db(record_reminder_message, self.engine, event.id, interval, message_id)
        logger.info("Sent %s reminder for event %d", interval, event.id)

        if target.dm_reminders:
            for user_id in target.confirmed_user_ids:
                try:
                    await self.gateway.send_direct_message(user_id, embed=embed)
                except MusterError as exc:
                    logger.debug("DM reminder to %d failed: %s", user_id, exc.message)
        return True
