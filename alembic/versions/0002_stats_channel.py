"""Leaderboard channel and top-member role settings

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("guild_settings") as batch:
        batch.add_column(sa.Column("stats_channel_id", sa.BigInteger(), nullable=True))
        batch.add_column(sa.Column("stats_message_id", sa.BigInteger(), nullable=True))
        batch.add_column(
            sa.Column("stats_interval_hours", sa.Integer(), server_default="24")
        )
        batch.add_column(
            sa.Column("stats_refreshed_at", sa.DateTime(timezone=True), nullable=True)
        )
        batch.add_column(sa.Column("stats_top_role_id", sa.BigInteger(), nullable=True))
        batch.add_column(sa.Column("stats_top_count", sa.Integer(), server_default="10"))


def downgrade() -> None:
    with op.batch_alter_table("guild_settings") as batch:
        batch.drop_column("stats_top_count")
        batch.drop_column("stats_top_role_id")
        batch.drop_column("stats_refreshed_at")
        batch.drop_column("stats_interval_hours")
        batch.drop_column("stats_message_id")
        batch.drop_column("stats_channel_id")
