"""
muster.services.participation_service — Participant Queue Manager
==================================================================

Sign-ups, leaves, approvals, promotions and role changes.  Every operation
is a plain synchronous function that runs in **one transaction holding the
event row lock** (``SELECT … FOR UPDATE``), so two users racing for the
last slot are serialised by the database.

Participant states::

    pending ──approve──▶ confirmed ◀──promote── waitlist
       │                    │  ▲                   ▲
       └──reject (deleted)  │  └── promotion scan ─┘
                            └── leave (deleted) / decline

Rules that hold after every committed operation:

- the confirmed roster never exceeds ``max_participants`` or any role limit;
- waitlist positions are exactly ``1..k`` in queue order;
- a confirmed leave frees exactly one slot, handed to the first waiting
  participant whose role fits.

After each write the confirmed roster is re-counted inside the same
transaction.  An overrun, or a lock/serialization failure from the
database, surfaces as :class:`CapacityConflict` so the caller can retry
once via :func:`with_conflict_retry`.

:class:`QueueManager` is the async front door used by the bot: it ships
each call to a worker thread, applies the retry and re-renders the event
message.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from muster.database.engine import get_session, run_db
from muster.database.models import Event, EventStatus, Participant, ParticipantStatus
from muster.engine.capacity import capacity_block, has_allowed_role, over_capacity
from muster.engine.timing import as_utc, signup_deadline, utcnow
from muster.services.audit_service import log_action
from muster.services.exceptions import (
    CapacityConflict,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from muster.services.statistics_service import record_join

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.event_message import EventMessageRenderer

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

CONFIRMED = ParticipantStatus.CONFIRMED.value
WAITLIST = ParticipantStatus.WAITLIST.value
PENDING = ParticipantStatus.PENDING.value
DECLINED = ParticipantStatus.DECLINED.value


@dataclass(frozen=True, slots=True)
class ParticipationResult:
    """Outcome of a participation action, ready to show to the caller."""

    success: bool
    message: str
    status: str | None = None
    position: int | None = None
    # user moved onto the roster as a side effect (leave / decline / demotion)
    promoted_user_id: int | None = None
    # number of rows touched by bulk actions (approve / reject)
    affected: int = 0


# ---------------------------------------------------------------------------
# Transaction & roster helpers
# ---------------------------------------------------------------------------
# SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
_CONTENTION_PGCODES = frozenset({"40001", "40P01", "55P03"})


def _is_contention(exc: BaseException | None) -> bool:
    """True for duplicate-key races and lock/serialization failures."""
    if isinstance(exc, IntegrityError):
        return True
    if not isinstance(exc, OperationalError):
        return False
    if getattr(exc.orig, "pgcode", None) in _CONTENTION_PGCODES:
        return True
    # SQLite reports lock contention only through the message
    return "database is locked" in str(exc.orig)


@contextmanager
def _locked_event(engine: Engine, event_id: int):
    """Yield ``(session, event)`` with the event row locked for update.

    Lock timeouts, serialization failures and duplicate-key races from the
    driver are reported as :class:`CapacityConflict`; any other database
    failure stays a :class:`PersistenceError`.
    """
    try:
        with get_session(engine) as session:
            event = session.scalar(
                select(Event)
                .where(Event.id == event_id, Event.deleted_at.is_(None))
                .with_for_update()
            )
            if event is None:
                raise NotFoundError("Event")
            yield session, event
    except PersistenceError as exc:
        if _is_contention(exc.__cause__):
            raise CapacityConflict(
                "Another sign-up changed this event at the same time."
            ) from exc
        raise


def _participants(session: Session, event_id: int, status: str) -> list[Participant]:
    query = select(Participant).where(
        Participant.event_id == event_id, Participant.status == status
    )
    if status == WAITLIST:
        query = query.order_by(Participant.position, Participant.joined_at)
    else:
        query = query.order_by(Participant.joined_at, Participant.user_id)
    return list(session.scalars(query).all())


def _next_position(session: Session, event_id: int) -> int:
    current = session.scalar(
        select(func.max(Participant.position)).where(
            Participant.event_id == event_id, Participant.status == WAITLIST
        )
    )
    return (current or 0) + 1


def _reindex_waitlist(session: Session, event_id: int) -> None:
    """Renumber the waitlist ``1..k`` keeping its current order."""
    session.flush()
    for index, participant in enumerate(_participants(session, event_id, WAITLIST), start=1):
        if participant.position != index:
            participant.position = index
    session.flush()


def _assert_within_capacity(session: Session, event: Event) -> None:
    session.flush()
    if over_capacity(
        max_participants=event.max_participants,
        role_limits=event.role_limits,
        confirmed=_participants(session, event.id, CONFIRMED),
    ):
        raise CapacityConflict("The roster filled up while this action was running.")


def _block_reason(session: Session, event: Event, participant: Participant) -> str | None:
    return capacity_block(
        max_participants=event.max_participants,
        role_limits=event.role_limits,
        confirmed=_participants(session, event.id, CONFIRMED),
        role=participant.role,
        exclude_user_id=participant.user_id,
    )


def _confirm(session: Session, event: Event, participant: Participant, now: datetime) -> None:
    # Pending sign-ups were not counted as joins yet
    if participant.status == PENDING:
        record_join(session, event.guild_id, participant.user_id, now)
    participant.status = CONFIRMED
    participant.position = None


def _promotion_candidates(
    session: Session, event: Event, include_pending: bool
) -> list[Participant]:
    """Waitlist by position first, then pending sign-ups by join time."""
    candidates = _participants(session, event.id, WAITLIST)
    if include_pending:
        candidates += _participants(session, event.id, PENDING)
    return candidates


def _promotion_scan(
    session: Session,
    event: Event,
    now: datetime,
    *,
    include_pending: bool | None = None,
) -> Participant | None:
    """Confirm the first waiting participant whose role fits; return them.

    Pending sign-ups are only considered once the event no longer requires
    approval, unless *include_pending* says otherwise.
    """
    if include_pending is None:
        include_pending = not event.require_approval

    session.flush()
    for candidate in _promotion_candidates(session, event, include_pending):
        if _block_reason(session, event, candidate) is None:
            _confirm(session, event, candidate, now)
            _reindex_waitlist(session, event.id)
            logger.info(
                "Promoted user %d to confirmed on event %d", candidate.user_id, event.id
            )
            return candidate
    return None


def _ensure_signups_open(event: Event, now: datetime) -> None:
    start = as_utc(event.start_time)
    if event.status == EventStatus.SCHEDULED.value:
        if start <= now:
            raise ValidationError("Cannot join an event that has already started.")
    elif event.status == EventStatus.ACTIVE.value:
        if not event.late_signups:
            raise ValidationError("This event is not accepting signups.")
    else:
        raise ValidationError("This event is not accepting signups.")

    deadline = signup_deadline(event.start_time, event.deadline_hours)
    if deadline is not None and now >= deadline:
        raise ValidationError("The signup deadline for this event has passed.")


# ---------------------------------------------------------------------------
# Join / leave / decline
# ---------------------------------------------------------------------------
def join_event(
    engine: Engine,
    event_id: int,
    user_id: int,
    username: str,
    role: str | None = None,
    spec: str | None = None,
    caller_role_ids: Iterable = (),
    note: str | None = None,
    now: datetime | None = None,
) -> ParticipationResult:
    """Sign *user_id* up for an event.

    Lands as ``pending`` when the event requires approval, ``confirmed``
    when overall and role capacity allow, otherwise at the back of the
    waitlist.  Callers without an allowed role are benched on the waitlist
    when ``bench_overflow`` is on and rejected otherwise.

    Raises
    ------
    NotFoundError
        Unknown or deleted event.
    ValidationError
        Signups closed, deadline passed, role not allowed, already signed up.
    CapacityConflict
        A concurrent write invalidated the capacity check.
    """
    now = now or utcnow()
    with _locked_event(engine, event_id) as (session, event):
        _ensure_signups_open(event, now)

        eligible = has_allowed_role(event.allowed_roles, caller_role_ids)
        if not eligible and not event.bench_overflow:
            raise ValidationError(
                "You do not have the required role(s) to sign up for this event."
            )

        participant = session.get(Participant, (event_id, user_id))
        if participant is not None and participant.status != DECLINED:
            raise ValidationError("You are already signed up for this event.")

        if not eligible:
            status = WAITLIST
        elif event.require_approval:
            status = PENDING
        else:
            status = CONFIRMED if capacity_block(
                max_participants=event.max_participants,
                role_limits=event.role_limits,
                confirmed=_participants(session, event_id, CONFIRMED),
                role=role,
                exclude_user_id=user_id,
            ) is None else WAITLIST

        position = _next_position(session, event_id) if status == WAITLIST else None

        if participant is None:
            participant = Participant(event_id=event_id, user_id=user_id)
            session.add(participant)
        participant.username = username
        participant.role = role
        participant.spec = spec
        participant.note = note
        participant.no_show = False
        participant.joined_at = now
        participant.status = status
        participant.position = position

        if status in (CONFIRMED, WAITLIST):
            record_join(session, event.guild_id, user_id, now)
        _assert_within_capacity(session, event)

        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action="signup",
            user_id=user_id,
            username=username,
            details={"role": role, "spec": spec, "status": status},
            at=now,
        )
        position = participant.position

    logger.info("User %d joined event %d as %s", user_id, event_id, status)

    if status == PENDING:
        message = "Your signup is pending approval from the event organiser."
    elif status == WAITLIST:
        message = f"You have been added to the waitlist (position {position})."
    else:
        message = "Successfully joined the event!"
    return ParticipationResult(True, message, status=status, position=position)


def _withdraw(
    engine: Engine,
    event_id: int,
    user_id: int,
    *,
    keep_row: bool,
    now: datetime | None,
    username: str | None = None,
) -> ParticipationResult:
    now = now or utcnow()
    action = "decline" if keep_row else "leave"
    with _locked_event(engine, event_id) as (session, event):
        participant = session.get(Participant, (event_id, user_id))

        if participant is None or participant.status == DECLINED:
            if not keep_row:
                return ParticipationResult(False, "You are not signed up for this event.")
            if participant is not None:
                return ParticipationResult(False, "You have already declined this event.")
            # Declining without a prior sign-up still records the answer
            session.add(Participant(
                event_id=event_id,
                user_id=user_id,
                username=username or str(user_id),
                status=DECLINED,
                joined_at=now,
            ))
            log_action(session, guild_id=event.guild_id, event_id=event_id,
                       action=action, user_id=user_id, at=now)
            return ParticipationResult(True, "You have declined this event.", status=DECLINED)

        was_confirmed = participant.status == CONFIRMED
        username = participant.username

        if keep_row:
            participant.status = DECLINED
            participant.position = None
        else:
            session.delete(participant)
        _reindex_waitlist(session, event_id)

        promoted = _promotion_scan(session, event, now) if was_confirmed else None
        _assert_within_capacity(session, event)

        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action=action,
            user_id=user_id,
            username=username,
            details={"promoted_user_id": promoted.user_id} if promoted else None,
            at=now,
        )
        promoted_id = promoted.user_id if promoted else None

    logger.info("User %d %s event %d", user_id, "declined" if keep_row else "left", event_id)
    return ParticipationResult(
        True,
        "You have declined this event." if keep_row else "You have left the event.",
        status=DECLINED if keep_row else None,
        promoted_user_id=promoted_id,
    )


def leave_event(
    engine: Engine, event_id: int, user_id: int, now: datetime | None = None
) -> ParticipationResult:
    """Remove a sign-up.  A freed confirmed slot goes to the next eligible waiter."""
    return _withdraw(engine, event_id, user_id, keep_row=False, now=now)


def decline_event(
    engine: Engine,
    event_id: int,
    user_id: int,
    username: str | None = None,
    now: datetime | None = None,
) -> ParticipationResult:
    """Like :func:`leave_event`, but keeps the row as ``declined``.

    Declining without a prior sign-up records a ``declined`` row too.
    """
    return _withdraw(engine, event_id, user_id, keep_row=True, now=now, username=username)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------
def approve_participants(
    engine: Engine,
    event_id: int,
    user_ids: Sequence[int],
    approver_id: int,
    now: datetime | None = None,
) -> ParticipationResult:
    """Move pending sign-ups onto the roster, or the waitlist once it is full.

    Capacity is re-counted for every id, so approving more people than
    there are slots waitlists the overflow in the order given.
    """
    now = now or utcnow()
    approved = 0
    waitlisted = 0
    with _locked_event(engine, event_id) as (session, event):
        if not event.require_approval:
            raise ValidationError("This event does not require approval.")

        for user_id in user_ids:
            participant = session.get(Participant, (event_id, user_id))
            if participant is None or participant.status != PENDING:
                continue

            session.flush()
            if _block_reason(session, event, participant) is None:
                _confirm(session, event, participant, now)
                approved += 1
            else:
                record_join(session, event.guild_id, user_id, now)
                participant.status = WAITLIST
                participant.position = _next_position(session, event_id)
                waitlisted += 1

            log_action(
                session,
                guild_id=event.guild_id,
                event_id=event_id,
                action="approve_participant",
                user_id=approver_id,
                details={
                    "approved_user_id": user_id,
                    "approved_username": participant.username,
                    "status": participant.status,
                },
                at=now,
            )

        _assert_within_capacity(session, event)

    logger.info(
        "Event %d: %d approved, %d waitlisted by %d", event_id, approved, waitlisted, approver_id
    )
    message = f"Approved {approved} participant(s)."
    if waitlisted:
        message += f" {waitlisted} moved to the waitlist (event full)."
    return ParticipationResult(True, message, affected=approved + waitlisted)


def reject_participants(
    engine: Engine,
    event_id: int,
    user_ids: Sequence[int],
    rejecter_id: int,
    now: datetime | None = None,
) -> ParticipationResult:
    """Delete pending sign-ups."""
    now = now or utcnow()
    rejected = 0
    with _locked_event(engine, event_id) as (session, event):
        if not event.require_approval:
            raise ValidationError("This event does not require approval.")

        for user_id in user_ids:
            participant = session.get(Participant, (event_id, user_id))
            if participant is None or participant.status != PENDING:
                continue
            log_action(
                session,
                guild_id=event.guild_id,
                event_id=event_id,
                action="reject_participant",
                user_id=rejecter_id,
                details={
                    "rejected_user_id": user_id,
                    "rejected_username": participant.username,
                },
                at=now,
            )
            session.delete(participant)
            rejected += 1

    logger.info("Event %d: %d rejected by %d", event_id, rejected, rejecter_id)
    return ParticipationResult(True, f"Rejected {rejected} participant(s).", affected=rejected)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------
def promote_participant(
    engine: Engine,
    event_id: int,
    user_id: int | None = None,
    promoter_id: int | None = None,
    now: datetime | None = None,
) -> ParticipationResult:
    """Move a waiting participant onto the roster.

    With *user_id* that participant is promoted; without it the first
    candidate that fits (waitlist by position, then pending by join time).
    A full roster is reported with ``success=False`` rather than raised.
    """
    now = now or utcnow()
    with _locked_event(engine, event_id) as (session, event):
        if user_id is not None:
            participant = session.get(Participant, (event_id, user_id))
            if participant is None or participant.status not in (WAITLIST, PENDING):
                return ParticipationResult(
                    False, "Participant is not on the waitlist or pending approval."
                )
            reason = _block_reason(session, event, participant)
            if reason is not None:
                return ParticipationResult(
                    False, f"{reason} Cannot promote.",
                    status=participant.status, position=participant.position,
                )
            _confirm(session, event, participant, now)
            _reindex_waitlist(session, event_id)
        else:
            if not _promotion_candidates(session, event, include_pending=True):
                return ParticipationResult(
                    False, "No participants on the waitlist or pending approval."
                )
            participant = _promotion_scan(session, event, now, include_pending=True)
            if participant is None:
                return ParticipationResult(False, "Event is full. Cannot promote.")

        _assert_within_capacity(session, event)
        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action="promote_participant",
            user_id=promoter_id,
            details={
                "promoted_user_id": participant.user_id,
                "promoted_username": participant.username,
            },
            at=now,
        )
        promoted_id = participant.user_id

    logger.info("Event %d: user %d promoted by %s", event_id, promoted_id, promoter_id)
    return ParticipationResult(
        True,
        f"<@{promoted_id}> has been promoted from the bench to the roster!",
        status=CONFIRMED,
        promoted_user_id=promoted_id,
    )


def promote_next(
    engine: Engine,
    event_id: int,
    promoter_id: int | None = None,
    now: datetime | None = None,
) -> ParticipationResult:
    return promote_participant(engine, event_id, None, promoter_id, now=now)


# ---------------------------------------------------------------------------
# Role changes
# ---------------------------------------------------------------------------
def update_role(
    engine: Engine,
    event_id: int,
    user_id: int,
    new_role: str,
    spec: str | None = None,
    now: datetime | None = None,
) -> ParticipationResult:
    """Change a participant's role.

    A confirmed participant switching into a full role is moved to the back
    of the waitlist (``joined_at`` kept) and the slot they held is offered
    to the next waiting participant.
    """
    now = now or utcnow()
    with _locked_event(engine, event_id) as (session, event):
        participant = session.get(Participant, (event_id, user_id))
        if participant is None or participant.status == DECLINED:
            return ParticipationResult(False, "You are not signed up for this event.")

        old_role = participant.role
        demoted = False
        promoted = None

        if participant.status == CONFIRMED:
            reason = capacity_block(
                max_participants=None,
                role_limits=event.role_limits,
                confirmed=_participants(session, event_id, CONFIRMED),
                role=new_role,
                exclude_user_id=user_id,
            )
            participant.role = new_role
            participant.spec = spec
            if reason is not None:
                participant.status = WAITLIST
                participant.position = _next_position(session, event_id)
                demoted = True
                promoted = _promotion_scan(session, event, now)
        else:
            participant.role = new_role
            participant.spec = spec

        _reindex_waitlist(session, event_id)
        _assert_within_capacity(session, event)

        log_action(
            session,
            guild_id=event.guild_id,
            event_id=event_id,
            action="update_role",
            user_id=user_id,
            username=participant.username,
            details={"old_role": old_role, "role": new_role, "spec": spec, "demoted": demoted},
            at=now,
        )
        status = participant.status
        position = participant.position
        promoted_id = promoted.user_id if promoted else None

    label = f"{new_role} ({spec})" if spec else new_role
    if demoted:
        logger.info("Event %d: user %d demoted to waitlist switching to %s", event_id, user_id, new_role)
        return ParticipationResult(
            True,
            f"The {new_role} role is full. Role updated to {label} and you were "
            f"moved to the waitlist (position {position}).",
            status=status,
            position=position,
            promoted_user_id=promoted_id,
        )
    return ParticipationResult(True, f"Role updated to {label}.", status=status, position=position)


# ---------------------------------------------------------------------------
# Conflict retry
# ---------------------------------------------------------------------------
def with_conflict_retry(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Call *func*, retrying exactly once on :class:`CapacityConflict`."""
    try:
        return func(*args, **kwargs)
    except CapacityConflict:
        logger.warning("Capacity conflict in %s; retrying once", func.__name__)
        return func(*args, **kwargs)


# ---------------------------------------------------------------------------
# Async front door
# ---------------------------------------------------------------------------
class QueueManager:
    """Async wrapper used by the bot: thread hop, single retry, re-render.

    The event message is refreshed after every successful action; a render
    failure is logged and never turns a committed action into an error.
    """

    def __init__(self, engine: Engine, renderer: EventMessageRenderer) -> None:
        self.engine = engine
        self.renderer = renderer

    async def _run(self, func: Callable[..., ParticipationResult], event_id: int, *args, **kwargs):
        result = await run_db(with_conflict_retry, func, self.engine, event_id, *args, **kwargs)
        if result.success or result.affected:
            try:
                await self.renderer.refresh(event_id)
            except Exception:
                logger.exception("Failed to refresh message for event %d", event_id)
        return result

    async def join(self, event_id: int, user_id: int, username: str, **kwargs) -> ParticipationResult:
        return await self._run(join_event, event_id, user_id, username, **kwargs)

    async def leave(self, event_id: int, user_id: int) -> ParticipationResult:
        return await self._run(leave_event, event_id, user_id)

    async def decline(self, event_id: int, user_id: int, username: str | None = None) -> ParticipationResult:
        return await self._run(decline_event, event_id, user_id, username)

    async def approve(self, event_id: int, user_ids: Sequence[int], approver_id: int) -> ParticipationResult:
        return await self._run(approve_participants, event_id, user_ids, approver_id)

    async def reject(self, event_id: int, user_ids: Sequence[int], rejecter_id: int) -> ParticipationResult:
        return await self._run(reject_participants, event_id, user_ids, rejecter_id)

    async def promote(
        self, event_id: int, user_id: int | None = None, promoter_id: int | None = None
    ) -> ParticipationResult:
        return await self._run(promote_participant, event_id, user_id, promoter_id)

    async def update_role(
        self, event_id: int, user_id: int, new_role: str, spec: str | None = None
    ) -> ParticipationResult:
        return await self._run(update_role, event_id, user_id, new_role, spec)
