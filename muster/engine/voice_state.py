"""
muster.engine.voice_state — Temporary Voice Channel State
==========================================================

The event row stores voice-channel bookkeeping as a handful of nullable
columns.  :func:`voice_state_of` folds them into one explicit variant so
callers never have to guess whether a missing id means "not yet created"
or "creation failed":

    NotScheduled → Scheduled(at) → Created(external_id, at) → Deleted
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from muster.engine.timing import as_utc, voice_create_time

if TYPE_CHECKING:
    from muster.database.models import Event


@dataclass(frozen=True, slots=True)
class NotScheduled:
    """Voice channels are disabled for this event."""


@dataclass(frozen=True, slots=True)
class Scheduled:
    """Channel will be created at ``at``."""
    at: datetime


@dataclass(frozen=True, slots=True)
class Created:
    external_id: int
    at: datetime
    delete_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Deleted:
    at: datetime | None = None


VoiceState = NotScheduled | Scheduled | Created | Deleted


def voice_state_of(event: Event, default_create_before: int) -> VoiceState:
    """Derive the voice-channel state of *event*.

    ``default_create_before`` is the guild's lead time, used when the event
    has no override.
    """
    if event.voice_channel_deleted_at is not None:
        return Deleted(at=as_utc(event.voice_channel_deleted_at))

    if event.voice_channel_id is not None:
        created_at = event.voice_channel_created_at or event.start_time
        delete_at = (
            as_utc(event.voice_channel_delete_at)
            if event.voice_channel_delete_at is not None
            else None
        )
        return Created(
            external_id=event.voice_channel_id,
            at=as_utc(created_at),
            delete_at=delete_at,
        )

    if not event.voice_channel_enabled:
        return NotScheduled()

    lead = event.voice_create_before_minutes
    if lead is None:
        lead = default_create_before
    return Scheduled(at=voice_create_time(event.start_time, lead))
