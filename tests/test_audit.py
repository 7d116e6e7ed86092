"""
tests/test_audit.py — Audit Trail Retention
============================================
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from muster.database.models import GuildSettings, LogEntry
from muster.services import audit_service
from muster.services.exceptions import PersistenceError
from conftest import GUILD_ID, NOW


def _log(engine, guild_id, age):
    with Session(engine) as session:
        audit_service.log_action(
            session, guild_id=guild_id, action="signup", user_id=1, at=NOW - age,
        )
        session.commit()


def _remaining(engine):
    with Session(engine) as session:
        return sorted(
            (row.guild_id for row in session.scalars(select(LogEntry)).all())
        )


class TestCleanupOldLogs:

    def test_prunes_only_expired_entries(self, db_engine, guild_settings):
        guild_settings(log_retention_days=30)
        _log(db_engine, GUILD_ID, timedelta(days=40))
        _log(db_engine, GUILD_ID, timedelta(days=10))

        assert audit_service.cleanup_old_logs(db_engine, NOW) == {GUILD_ID: 1}
        assert _remaining(db_engine) == [GUILD_ID]

    def test_guild_without_retention_keeps_everything(self, db_engine):
        _log(db_engine, 555, timedelta(days=400))
        assert audit_service.cleanup_old_logs(db_engine, NOW) == {}
        assert _remaining(db_engine) == [555]

    def test_batches(self, db_engine, guild_settings, monkeypatch):
        monkeypatch.setattr(audit_service, "BATCH_SIZE", 2)
        guild_settings(log_retention_days=1)
        for _ in range(5):
            _log(db_engine, GUILD_ID, timedelta(days=2))

        assert audit_service.cleanup_old_logs(db_engine, NOW) == {GUILD_ID: 5}
        assert _remaining(db_engine) == []

    def test_failing_guild_does_not_block_others(self, db_engine, guild_settings, monkeypatch):
        guild_settings(log_retention_days=1)
        with Session(db_engine) as session:
            session.add(GuildSettings(guild_id=GUILD_ID + 1, log_retention_days=1))
            session.commit()
        _log(db_engine, GUILD_ID, timedelta(days=2))
        _log(db_engine, GUILD_ID + 1, timedelta(days=2))

        real_prune = audit_service._prune_guild

        def _prune(engine, guild_id, cutoff):
            if guild_id == GUILD_ID:
                raise PersistenceError("Database write failed.")
            return real_prune(engine, guild_id, cutoff)

        monkeypatch.setattr(audit_service, "_prune_guild", _prune)

        assert audit_service.cleanup_old_logs(db_engine, NOW) == {GUILD_ID + 1: 1}
        assert _remaining(db_engine) == [GUILD_ID]
