"""
muster.services.event_message — Event Message Rendering
========================================================

Keeps the signup message in the event channel in step with the database.
The roster is read on a worker thread, the embed is built from that
snapshot, and the edit goes out through the injected
:class:`~muster.services.gateway.MessagingGateway`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from muster.database.engine import get_session, run_db
from muster.database.models import Event, Participant, ParticipantStatus
from muster.services.embeds import build_event_embed

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.gateway import MessagingGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RosterSnapshot:
    event: Event
    confirmed: list[Participant]
    waitlist: list[Participant]
    pending: list[Participant]


def load_roster(engine: Engine, event_id: int) -> RosterSnapshot | None:
    """Read an event and its roster grouped by status."""
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return None
        rows = session.scalars(
            select(Participant)
            .where(Participant.event_id == event_id)
            .order_by(Participant.position, Participant.joined_at, Participant.user_id)
        ).all()
        session.expunge_all()

    def of(status: ParticipantStatus) -> list[Participant]:
        return [p for p in rows if p.status == status.value]

    return RosterSnapshot(
        event=event,
        confirmed=of(ParticipantStatus.CONFIRMED),
        waitlist=of(ParticipantStatus.WAITLIST),
        pending=of(ParticipantStatus.PENDING),
    )


def _store_message_id(engine: Engine, event_id: int, message_id: int) -> None:
    with get_session(engine) as session:
        session.execute(
            update(Event).where(Event.id == event_id).values(message_id=message_id)
        )


class EventMessageRenderer:
    """Publishes and refreshes the signup message of an event."""

    def __init__(self, engine: Engine, gateway: MessagingGateway) -> None:
        self.engine = engine
        self.gateway = gateway

    async def publish(self, event_id: int) -> int | None:
        """Post the signup message and remember its id."""
        snapshot = await run_db(load_roster, self.engine, event_id)
        if snapshot is None:
            return None
        event = snapshot.event
        embed = build_event_embed(event, snapshot.confirmed, snapshot.waitlist, snapshot.pending)
        message_id = await self.gateway.send_message(event.channel_id, embed=embed)
        await run_db(_store_message_id, self.engine, event_id, message_id)
        logger.info("Published event %d as message %d", event_id, message_id)
        return message_id

    async def refresh(self, event_id: int) -> bool:
        """Re-render the signup message.  Returns ``False`` if there is none.

        Raises :class:`~muster.services.exceptions.ExternalGatewayError`
        when the edit fails.
        """
        snapshot = await run_db(load_roster, self.engine, event_id)
        if snapshot is None or snapshot.event.message_id is None:
            return False
        if snapshot.event.deleted_at is not None:
            return False

        event = snapshot.event
        embed = build_event_embed(event, snapshot.confirmed, snapshot.waitlist, snapshot.pending)
        await self.gateway.edit_message(event.channel_id, event.message_id, embed=embed)
        logger.debug("Refreshed message for event %d", event_id)
        return True
