"""Initial schema: guild settings, events, participants, reminders, statistics, audit log

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "guild_settings",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("reminder_intervals", postgresql.JSONB(), nullable=True),
        sa.Column("dm_reminders", sa.Boolean(), server_default="false"),
        sa.Column("auto_delete_hours", sa.Integer(), nullable=True),
        sa.Column("approval_channel_ids", postgresql.JSONB(), nullable=True),
        sa.Column("archive_channel_id", sa.BigInteger(), nullable=True),
        sa.Column("voice_category_id", sa.BigInteger(), nullable=True),
        sa.Column("voice_create_before_minutes", sa.Integer(), server_default="30"),
        sa.Column("voice_post_event_minutes", sa.Integer(), server_default="60"),
        sa.Column("stats_min_events", sa.Integer(), server_default="3"),
        sa.Column("log_retention_days", sa.Integer(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("channel_id", sa.BigInteger(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("created_by", sa.BigInteger(), nullable=True),
        sa.Column("max_participants", sa.Integer(), nullable=True),
        sa.Column("role_limits", postgresql.JSONB(), nullable=True),
        sa.Column("require_approval", sa.Boolean(), server_default="false"),
        sa.Column("bench_overflow", sa.Boolean(), server_default="false"),
        sa.Column("allowed_roles", postgresql.JSONB(), nullable=True),
        sa.Column("deadline_hours", sa.Integer(), nullable=True),
        sa.Column("late_signups", sa.Boolean(), server_default="false"),
        sa.Column("voice_channel_enabled", sa.Boolean(), server_default="false"),
        sa.Column("voice_channel_name", sa.String(100), nullable=True),
        sa.Column("voice_channel_restricted", sa.Boolean(), server_default="false"),
        sa.Column("voice_create_before_minutes", sa.Integer(), nullable=True),
        sa.Column("voice_channel_id", sa.BigInteger(), nullable=True),
        sa.Column("voice_channel_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voice_channel_delete_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voice_channel_deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_id", sa.BigInteger(), nullable=True),
        sa.Column("thread_id", sa.BigInteger(), nullable=True),
        sa.Column("delete_thread", sa.Boolean(), server_default="false"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index("ix_events_status_start", "events", ["status", "start_time"])
    op.create_index("ix_events_guild", "events", ["guild_id"])

    op.create_table(
        "participants",
        sa.Column(
            "event_id", sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("user_id", sa.BigInteger(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("role", sa.String(50), nullable=True),
        sa.Column("spec", sa.String(50), nullable=True),
        sa.Column("note", sa.String(200), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column(
            "joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("no_show", sa.Boolean(), server_default="false"),
    )
    op.create_index(
        "ix_participants_event_status", "participants", ["event_id", "status"]
    )

    op.create_table(
        "reminders",
        sa.Column(
            "event_id", sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("interval", sa.String(20), primary_key=True),
        sa.Column("channel_id", sa.BigInteger(), nullable=True),
        sa.Column("message_id", sa.BigInteger(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "participant_statistics",
        sa.Column("user_id", sa.BigInteger(), primary_key=True),
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("total_joined", sa.Integer(), server_default="0"),
        sa.Column("total_completed", sa.Integer(), server_default="0"),
        sa.Column("total_no_shows", sa.Integer(), server_default="0"),
        sa.Column("score", sa.Integer(), server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_participant_stats_guild_score", "participant_statistics", ["guild_id", "score"]
    )

    op.create_table(
        "log_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_log_entries_guild_time", "log_entries", ["guild_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_log_entries_guild_time", table_name="log_entries")
    op.drop_table("log_entries")
    op.drop_index("ix_participant_stats_guild_score", table_name="participant_statistics")
    op.drop_table("participant_statistics")
    op.drop_table("reminders")
    op.drop_index("ix_participants_event_status", table_name="participants")
    op.drop_table("participants")
    op.drop_index("ix_events_guild", table_name="events")
    op.drop_index("ix_events_status_start", table_name="events")
    op.drop_table("events")
    op.drop_table("guild_settings")
