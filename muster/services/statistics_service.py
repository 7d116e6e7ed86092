"""
muster.services.statistics_service — Attendance Statistics & Leaderboard
=========================================================================

Per-guild attendance counters live in ``participant_statistics``:

- ``total_joined``    — bumped when a sign-up lands as confirmed or waitlist.
- ``total_completed`` — bumped for every confirmed, present participant when
  an event completes.
- ``total_no_shows``  — bumped instead of ``total_completed`` for confirmed
  participants flagged as no-shows.

The score is recomputed from the counters on every change (see
:mod:`muster.engine.scoring`) and ranks are recalculated in the same
transaction, so the leaderboard never shows a half-applied completion.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from muster.database.engine import get_session
from muster.database.models import (
    Event,
    EventStatus,
    Participant,
    ParticipantStatistics,
    ParticipantStatus,
)
from muster.engine.scoring import assign_ranks, calculate_score
from muster.services.audit_service import log_action
from muster.services.exceptions import NotFoundError, ValidationError
from muster.services.guild_config_service import load_guild_config

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------
def get_or_create_stats(session: Session, user_id: int, guild_id: int) -> ParticipantStatistics:
    """Fetch or insert the statistics row for user+guild."""
    stats = session.get(ParticipantStatistics, (user_id, guild_id))
    if stats is None:
        stats = ParticipantStatistics(
            user_id=user_id,
            guild_id=guild_id,
            total_joined=0,
            total_completed=0,
            total_no_shows=0,
            score=0,
        )
        session.add(stats)
        session.flush()
    return stats


def _rescore(stats: ParticipantStatistics) -> None:
    stats.score = calculate_score(
        stats.total_joined, stats.total_completed, stats.total_no_shows
    )


def record_join(session: Session, guild_id: int, user_id: int, at: datetime) -> None:
    """Count a confirmed or waitlisted sign-up in the caller's transaction."""
    stats = get_or_create_stats(session, user_id, guild_id)
    stats.total_joined += 1
    stats.last_activity_at = at
    _rescore(stats)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------
def apply_completion(session: Session, event: Event, at: datetime) -> int:
    """Credit every confirmed participant of a completing event.

    Runs inside the transaction that flips the event to ``completed`` and
    finishes with a rank recalculation.  Returns the number of
    participants credited.
    """
    confirmed = session.scalars(
        select(Participant).where(
            Participant.event_id == event.id,
            Participant.status == ParticipantStatus.CONFIRMED.value,
        )
    ).all()

    for participant in confirmed:
        stats = get_or_create_stats(session, participant.user_id, event.guild_id)
        if participant.no_show:
            stats.total_no_shows += 1
        else:
            stats.total_completed += 1
        stats.last_activity_at = at
        _rescore(stats)

    session.flush()
    recalculate_ranks(session, event.guild_id)
    logger.info(
        "Event %d completed: credited %d participant(s) in guild %d",
        event.id, len(confirmed), event.guild_id,
    )
    return len(confirmed)


def recalculate_ranks(session: Session, guild_id: int, min_events: int | None = None) -> None:
    """Re-rank every statistics row of *guild_id* in the caller's transaction.

    Only members with at least ``min_events`` completed events get a rank;
    defaults to the guild's ``stats_min_events``.
    """
    if min_events is None:
        min_events = load_guild_config(session, guild_id).stats_min_events

    rows = session.scalars(
        select(ParticipantStatistics).where(ParticipantStatistics.guild_id == guild_id)
    ).all()
    ranks = assign_ranks(rows, min_events)
    for row in rows:
        row.rank = ranks[row.user_id]
    session.flush()


# ---------------------------------------------------------------------------
# No-show flags
# ---------------------------------------------------------------------------
def _set_no_show(
    engine: Engine,
    event_id: int,
    user_id: int,
    flag: bool,
    actor_id: int | None,
) -> None:
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event")
        participant = session.get(Participant, (event_id, user_id))
        if participant is None:
            raise NotFoundError("Participant")
        if participant.status != ParticipantStatus.CONFIRMED.value:
            raise ValidationError("Only confirmed participants can be marked as no-show.")
        if participant.no_show == flag:
            raise ValidationError(
                "Participant is already marked as no-show." if flag
                else "Participant is not marked as no-show."
            )

        participant.no_show = flag

        # Completion already counted this participant; move the credit over
        if event.status == EventStatus.COMPLETED.value:
            stats = get_or_create_stats(session, user_id, event.guild_id)
            if flag:
                stats.total_completed = max(0, stats.total_completed - 1)
                stats.total_no_shows += 1
            else:
                stats.total_no_shows = max(0, stats.total_no_shows - 1)
                stats.total_completed += 1
            _rescore(stats)
            session.flush()
            recalculate_ranks(session, event.guild_id)

        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action="mark_no_show" if flag else "clear_no_show",
            user_id=actor_id,
            details={"participant_id": user_id},
        )

    logger.info(
        "No-show %s for user %d on event %d",
        "set" if flag else "cleared", user_id, event_id,
    )


def mark_no_show(engine: Engine, event_id: int, user_id: int, actor_id: int | None = None) -> None:
    """Flag a confirmed participant as absent.

    Raises ``ValidationError`` if the flag is already set.  On a completed
    event the participant's completed count moves to no-shows.
    """
    _set_no_show(engine, event_id, user_id, True, actor_id)


def clear_no_show(engine: Engine, event_id: int, user_id: int, actor_id: int | None = None) -> None:
    """Undo :func:`mark_no_show`."""
    _set_no_show(engine, event_id, user_id, False, actor_id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def _stats_dict(row: ParticipantStatistics) -> dict:
    return {
        "user_id": row.user_id,
        "guild_id": row.guild_id,
        "total_joined": row.total_joined,
        "total_completed": row.total_completed,
        "total_no_shows": row.total_no_shows,
        "score": row.score,
        "rank": row.rank,
        "last_activity_at": row.last_activity_at,
    }


def _ranked(session: Session, guild_id: int, limit: int) -> list[dict]:
    rows = session.scalars(
        select(ParticipantStatistics)
        .where(
            ParticipantStatistics.guild_id == guild_id,
            ParticipantStatistics.rank.isnot(None),
        )
        .order_by(ParticipantStatistics.rank)
        .limit(limit)
    ).all()
    return [_stats_dict(r) for r in rows]


def get_leaderboard(engine: Engine, guild_id: int, limit: int = 10) -> list[dict]:
    """Ranked members of *guild_id*, best first."""
    with Session(engine) as session:
        return _ranked(session, guild_id, limit)


def get_user_stats(engine: Engine, guild_id: int, user_id: int) -> dict | None:
    with Session(engine) as session:
        row = session.get(ParticipantStatistics, (user_id, guild_id))
        return _stats_dict(row) if row is not None else None


def get_top_participants(engine: Engine, guild_id: int, limit: int = 10) -> list[dict]:
    """Best-scoring members with at least ``stats_min_events`` completed events.

    These are the members who hold the guild's top-member role.
    """
    with Session(engine) as session:
        min_events = load_guild_config(session, guild_id).stats_min_events
        rows = session.scalars(
            select(ParticipantStatistics)
            .where(
                ParticipantStatistics.guild_id == guild_id,
                ParticipantStatistics.total_completed >= min_events,
            )
            .order_by(
                ParticipantStatistics.score.desc(),
                ParticipantStatistics.total_completed.desc(),
                ParticipantStatistics.user_id,
            )
            .limit(limit)
        ).all()
        return [_stats_dict(r) for r in rows]


def refresh_leaderboard(engine: Engine, guild_id: int, limit: int = 10) -> list[dict]:
    """Recalculate ranks, then return the top *limit* ranked members."""
    with get_session(engine) as session:
        recalculate_ranks(session, guild_id)
        return _ranked(session, guild_id, limit)
