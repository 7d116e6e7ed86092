"""
muster.bot.core — Bot Instance & Cog Loader
============================================

:class:`MusterBot` is a ``commands.Bot`` subclass that carries the shared
state every cog needs:

- ``bot.cfg``          — the parsed :class:`MusterConfig`;
- ``bot.engine``       — the SQLAlchemy engine;
- ``bot.gateway``      — the :class:`DiscordGateway` all services post through;
- ``bot.queue``        — the async participation front door;
- ``bot.lifecycle``    — event creation / cancellation;
- ``bot.orchestrator`` — the scheduler tick driven by the Scheduler cog.

Services never import the bot; they receive the gateway in their
constructor, so the same objects run against a fake gateway in tests.
"""

from __future__ import annotations

import logging

import discord
from discord.ext import commands
from sqlalchemy import Engine

from muster.config import MusterConfig
from muster.services.event_message import EventMessageRenderer
from muster.services.gateway import DiscordGateway
from muster.services.participation_service import QueueManager
from muster.services.scheduler_service import SchedulerOrchestrator

logger = logging.getLogger(__name__)

# Cog modules to load on startup
EXTENSIONS: list[str] = [
    "muster.bot.cogs.scheduler",
]


class MusterBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`MusterConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    """

    def __init__(self, cfg: MusterConfig, engine: Engine) -> None:
        intents = discord.Intents.default()
        intents.members = True            # Privileged: member lookups and top-role sync

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} — event sign-ups",
        )

        self.cfg = cfg
        self.engine = engine

        self.gateway = DiscordGateway(self)
        self.renderer = EventMessageRenderer(engine, self.gateway)
        self.queue = QueueManager(engine, self.renderer)
        self.orchestrator = SchedulerOrchestrator(engine, self.gateway, renderer=self.renderer)
        self.lifecycle = self.orchestrator.lifecycle

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load cog extensions.  One broken cog must not take the bot down."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

    async def close(self) -> None:
        """Graceful shutdown — unload cogs so the tick loop stops cleanly."""
        logger.info("Bot shutting down…")
        for ext in list(self.extensions):
            try:
                await self.unload_extension(ext)
            except Exception:
                logger.exception("Failed to unload extension %s", ext)
        await super().close()
