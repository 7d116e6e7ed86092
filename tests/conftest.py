"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from muster.database.models import Base, Event, GuildSettings
from muster.services.gateway import MessagingGateway

GUILD_ID = 100
CHANNEL_ID = 500
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def run_async(coro):
    """Run a coroutine on a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Muster tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def gateway():
    """A recording fake gateway; ``send_message`` hands out increasing ids."""
    fake = AsyncMock(spec=MessagingGateway)
    message_ids = itertools.count(9000)
    channel_ids = itertools.count(7000)
    fake.send_message.side_effect = lambda *args, **kwargs: next(message_ids)
    fake.create_voice_channel.side_effect = lambda *args, **kwargs: next(channel_ids)
    return fake


@pytest.fixture
def make_event(db_engine):
    """Factory inserting an event straight into the database.

    Defaults to a scheduled event one day after :data:`NOW`.
    """
    def _make(**overrides) -> int:
        values = {
            "guild_id": GUILD_ID,
            "channel_id": CHANNEL_ID,
            "title": "Raid Night",
            "start_time": NOW + timedelta(days=1),
            "status": "scheduled",
        }
        values.update(overrides)
        with Session(db_engine) as session:
            event = Event(**values)
            session.add(event)
            session.commit()
            return event.id

    return _make


@pytest.fixture
def guild_settings(db_engine):
    """Factory inserting a ``guild_settings`` row for :data:`GUILD_ID`."""
    def _make(**overrides) -> None:
        with Session(db_engine) as session:
            session.add(GuildSettings(guild_id=GUILD_ID, **overrides))
            session.commit()

    return _make
