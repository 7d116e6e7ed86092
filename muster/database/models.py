"""
muster.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- guild_settings         — Per-guild scheduling, voice and statistics tuning
- events                 — Sign-up events and their lifecycle state
- participants           — One row per (event, user) sign-up
- reminders              — Sent reminders; row existence is the send guard
- participant_statistics — Per-guild attendance counters and leaderboard rank
- log_entries            — Append-only audit trail of participation actions
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Muster ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventStatus(enum.StrEnum):
    """Event lifecycle states.  Transitions only move forward."""
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipantStatus(enum.StrEnum):
    """Sign-up states for a single participant."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    WAITLIST = "waitlist"
    DECLINED = "declined"


# Statuses that hold or wait for a roster slot
ACTIVE_PARTICIPANT_STATUSES: tuple[str, ...] = (
    ParticipantStatus.PENDING.value,
    ParticipantStatus.CONFIRMED.value,
    ParticipantStatus.WAITLIST.value,
)


# ---------------------------------------------------------------------------
# GuildSettings — per-guild tuning consumed by the scheduler
# ---------------------------------------------------------------------------
class GuildSettings(Base):
    """Guild-level configuration.

    Written by the settings commands / dashboard, read-only for the
    lifecycle engine.  Missing rows fall back to the defaults in
    :mod:`muster.services.guild_config_service`.
    """
    __tablename__ = "guild_settings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    reminder_intervals: Mapped[list | None] = mapped_column(JSONB, default=list)
    dm_reminders: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_delete_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approval_channel_ids: Mapped[list | None] = mapped_column(JSONB, default=list)
    archive_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    voice_category_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    voice_create_before_minutes: Mapped[int] = mapped_column(Integer, default=30)
    voice_post_event_minutes: Mapped[int] = mapped_column(Integer, default=60)
    stats_min_events: Mapped[int] = mapped_column(Integer, default=3)
    log_retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Leaderboard message and top-member role
    stats_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stats_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stats_interval_hours: Mapped[int] = mapped_column(Integer, default=24)
    stats_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stats_top_role_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stats_top_count: Mapped[int] = mapped_column(Integer, default=10)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<GuildSettings guild={self.guild_id}>"


# ---------------------------------------------------------------------------
# Event — a sign-up event and its lifecycle state
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    channel_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.SCHEDULED.value
    )
    created_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Capacity & eligibility
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    role_limits: Mapped[dict | None] = mapped_column(JSONB, nullable=True)  # role → cap
    require_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    bench_overflow: Mapped[bool] = mapped_column(Boolean, default=False)
    allowed_roles: Mapped[list | None] = mapped_column(JSONB, default=list)
    deadline_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    late_signups: Mapped[bool] = mapped_column(Boolean, default=False)

    # Temporary voice channel
    voice_channel_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    voice_channel_name: Mapped[str | None] = mapped_column(String(100), default=None)
    voice_channel_restricted: Mapped[bool] = mapped_column(Boolean, default=False)
    voice_create_before_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    voice_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    voice_channel_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    voice_channel_delete_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    voice_channel_deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # External message / thread handles
    message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    thread_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    delete_thread: Mapped[bool] = mapped_column(Boolean, default=False)

    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    participants: Mapped[list[Participant]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )
    reminders: Mapped[list[Reminder]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_events_status_start", "status", "start_time"),
        Index("ix_events_guild", "guild_id"),
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id} title={self.title!r} status={self.status}>"


# ---------------------------------------------------------------------------
# Participant — one sign-up per (event, user)
# ---------------------------------------------------------------------------
class Participant(Base):
    """A user's sign-up for an event.

    ``position`` is set only while ``status == 'waitlist'`` and the
    waitlist positions of an event always form ``1..k``.
    """
    __tablename__ = "participants"

    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str | None] = mapped_column(String(50), default=None)
    spec: Mapped[str | None] = mapped_column(String(50), default=None)
    note: Mapped[str | None] = mapped_column(String(200), default=None)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    no_show: Mapped[bool] = mapped_column(Boolean, default=False)

    event: Mapped[Event] = relationship(back_populates="participants")

    __table_args__ = (
        Index("ix_participants_event_status", "event_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Participant event={self.event_id} user={self.user_id} "
            f"status={self.status} pos={self.position}>"
        )


# ---------------------------------------------------------------------------
# Reminder — at-most-once guard per (event, interval)
# ---------------------------------------------------------------------------
class Reminder(Base):
    __tablename__ = "reminders"

    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    interval: Mapped[str] = mapped_column(String(20), primary_key=True)
    channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped[Event] = relationship(back_populates="reminders")

    def __repr__(self) -> str:
        return f"<Reminder event={self.event_id} interval={self.interval!r}>"


# ---------------------------------------------------------------------------
# ParticipantStatistics — per-guild attendance counters
# ---------------------------------------------------------------------------
class ParticipantStatistics(Base):
    __tablename__ = "participant_statistics"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    total_joined: Mapped[int] = mapped_column(Integer, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, default=0)
    total_no_shows: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[int] = mapped_column(Integer, default=0)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_participant_stats_guild_score", "guild_id", "score"),
    )

    def __repr__(self) -> str:
        return (
            f"<ParticipantStatistics user={self.user_id} guild={self.guild_id} "
            f"score={self.score} rank={self.rank}>"
        )


# ---------------------------------------------------------------------------
# LogEntry — append-only audit trail
# ---------------------------------------------------------------------------
class LogEntry(Base):
    __tablename__ = "log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_log_entries_guild_time", "guild_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LogEntry id={self.id} guild={self.guild_id} action={self.action}>"
