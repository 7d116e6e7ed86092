"""
muster.bot.cogs.scheduler — Event Lifecycle Tick Loop
======================================================

Drives :class:`~muster.services.scheduler_service.SchedulerOrchestrator`
from a ``discord.ext.tasks`` loop.  The period defaults to one minute and
follows ``tick_seconds`` from ``config.yaml``.

Unloading the cog calls ``loop.stop()`` rather than ``cancel()`` so a tick
that is already running finishes its steps before the loop exits.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

if TYPE_CHECKING:
    from muster.bot.core import MusterBot

logger = logging.getLogger(__name__)


class Scheduler(commands.Cog, name="Scheduler"):
    """Runs the reminder, lifecycle, voice and retention checks every tick."""

    def __init__(self, bot: MusterBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start the tick loop when the cog is loaded."""
        if self.bot.cfg.tick_seconds != 60:
            self.tick_loop.change_interval(seconds=self.bot.cfg.tick_seconds)
        self.tick_loop.start()
        logger.info("Scheduler started (every %ds)", self.bot.cfg.tick_seconds)

    async def cog_unload(self) -> None:
        """Let the in-flight tick finish, then stop."""
        self.tick_loop.stop()

    @tasks.loop(minutes=1)
    async def tick_loop(self) -> None:
        try:
            await self.bot.orchestrator.run_tick()
        except Exception:
            logger.exception("Scheduler tick failed", extra={"task": "scheduler"})

    @tick_loop.before_loop
    async def _wait_ready(self) -> None:
        await self.bot.wait_until_ready()


async def setup(bot: MusterBot) -> None:
    await bot.add_cog(Scheduler(bot))
