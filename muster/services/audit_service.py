"""
muster.services.audit_service — Audit Trail & Log Retention
============================================================

Participation and lifecycle actions append a row to ``log_entries`` inside
the same transaction as the change they describe.  The scheduler's last
step prunes entries older than each guild's ``log_retention_days``.

**Deletion is batched** so a large backlog never holds a long lock.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session

from muster.database.engine import get_session
from muster.database.models import GuildSettings, LogEntry
from muster.engine.timing import utcnow

logger = logging.getLogger(__name__)

BATCH_SIZE = 5_000


def log_action(
    session: Session,
    *,
    guild_id: int,
    action: str,
    event_id: int | None = None,
    user_id: int | None = None,
    username: str | None = None,
    details: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> None:
    """Insert a row into log_entries within the current transaction."""
    session.add(LogEntry(
        guild_id=guild_id,
        event_id=event_id,
        action=action,
        user_id=user_id,
        username=username,
        details=details or {},
        created_at=at or utcnow(),
    ))
    logger.debug("Audit: %s event=%s user=%s", action, event_id, user_id)


def _prune_guild(engine: Engine, guild_id: int, cutoff: datetime) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(LogEntry.id)
                .where(LogEntry.guild_id == guild_id, LogEntry.created_at < cutoff)
                .limit(BATCH_SIZE)
            ).all()
            if not ids:
                return deleted
            result = session.execute(delete(LogEntry).where(LogEntry.id.in_(ids)))
            deleted += result.rowcount  # type: ignore[operator]


def cleanup_old_logs(engine: Engine, now: datetime | None = None) -> dict[int, int]:
    """Delete log entries older than each guild's retention window.

    Guilds without ``log_retention_days`` keep everything; a guild whose
    pruning fails is logged and skipped.  Returns
    ``{guild_id: rows_deleted}`` for guilds that lost at least one row.
    """
    now = now or utcnow()
    with Session(engine) as session:
        guilds = session.execute(
            select(GuildSettings.guild_id, GuildSettings.log_retention_days)
            .where(GuildSettings.log_retention_days.isnot(None))
            .order_by(GuildSettings.guild_id)
        ).all()

    summary: dict[int, int] = {}
    for guild_id, retention_days in guilds:
        try:
            deleted = _prune_guild(engine, guild_id, now - timedelta(days=retention_days))
        except Exception:
            logger.exception("Log retention failed for guild %d", guild_id)
            continue

        if deleted:
            summary[guild_id] = deleted
            logger.info(
                "Log retention: deleted %d entries for guild %d (retention_days=%d)",
                deleted, guild_id, retention_days,
            )
    return summary
