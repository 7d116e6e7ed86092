"""
muster.services.scheduler_service — Scheduler Orchestrator
===========================================================

One tick per minute drives every time-based transition, always in this
order:

1. reminders      — reminders go out before an event can flip to active
2. activation     — scheduled → active
3. archiving      — active → completed (+ statistics)
4. deletion       — completed events past auto-delete lose their message
5. voice channels — create due channels, delete expired ones
6. log retention  — prune audit entries past each guild's retention
7. statistics     — leaderboard message and top-member role, at most hourly

Each step iterates its own events and isolates failures per event; a step
that blows up as a whole is logged and the next step still runs.  An
``asyncio.Lock`` keeps ticks from overlapping: a tick that fires while the
previous one is still running is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from muster.constants import STATS_PASS_INTERVAL
from muster.database.engine import run_db
from muster.engine.timing import utcnow
from muster.services.audit_service import cleanup_old_logs
from muster.services.event_message import EventMessageRenderer
from muster.services.lifecycle_service import EventLifecycle
from muster.services.reminder_service import ReminderDispatcher
from muster.services.stats_service import StatsPublisher
from muster.services.voice_service import VoiceChannelManager

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from muster.services.gateway import MessagingGateway

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickReport:
    """Per-step counts of one scheduler tick."""
    started_at: datetime
    reminders_sent: int = 0
    activated: int = 0
    completed: int = 0
    deleted: int = 0
    voice_created: int = 0
    voice_deleted: int = 0
    logs_pruned: int = 0
    stats_refreshed: int = 0
    roles_changed: int = 0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return not any((
            self.reminders_sent, self.activated, self.completed, self.deleted,
            self.voice_created, self.voice_deleted, self.logs_pruned,
            self.stats_refreshed, self.roles_changed, self.failed_steps,
        ))


class SchedulerOrchestrator:
    """Runs the lifecycle checks in a fixed order, one tick at a time."""

    def __init__(
        self,
        engine: Engine,
        gateway: MessagingGateway,
        *,
        renderer: EventMessageRenderer | None = None,
        reminders: ReminderDispatcher | None = None,
        voice: VoiceChannelManager | None = None,
        lifecycle: EventLifecycle | None = None,
        stats: StatsPublisher | None = None,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.renderer = renderer or EventMessageRenderer(engine, gateway)
        self.reminders = reminders or ReminderDispatcher(engine, gateway)
        self.voice = voice or VoiceChannelManager(engine, gateway)
        self.lifecycle = lifecycle or EventLifecycle(engine, gateway, self.renderer, self.voice)
        self.stats = stats or StatsPublisher(engine, gateway)
        self._last_stats_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_tick(self, now: datetime | None = None) -> TickReport | None:
        """Run one tick.  Returns ``None`` if the previous tick is still running."""
        if self._lock.locked():
            logger.warning("Previous scheduler tick still running; skipping")
            return None

        async with self._lock:
            now = now or utcnow()
            report = TickReport(started_at=now)

            report.reminders_sent = await self._step(
                report, "reminders", self.reminders.run(now), 0
            )
            report.activated = await self._step(
                report, "activation", self.lifecycle.run_activation(now), 0
            )
            report.completed = await self._step(
                report, "archiving", self.lifecycle.run_archiving(now), 0
            )
            report.deleted = await self._step(
                report, "deletion", self.lifecycle.run_deletion(now), 0
            )
            voice = await self._step(report, "voice", self.voice.run(now), None)
            if voice is not None:
                report.voice_created = voice.created
                report.voice_deleted = voice.deleted
            pruned = await self._step(
                report, "log_retention", run_db(cleanup_old_logs, self.engine, now), {}
            )
            report.logs_pruned = sum(pruned.values())

            if self._stats_due(now):
                self._last_stats_at = now
                stats = await self._step(report, "stats", self.stats.run(now), None)
                if stats is not None:
                    report.stats_refreshed = stats.refreshed
                    report.roles_changed = stats.roles_added + stats.roles_removed

        if not report.idle:
            logger.info(
                "Tick: reminders=%d activated=%d completed=%d deleted=%d "
                "voice+%d/-%d logs=%d stats=%d roles=%d failed=%s",
                report.reminders_sent, report.activated, report.completed, report.deleted,
                report.voice_created, report.voice_deleted, report.logs_pruned,
                report.stats_refreshed, report.roles_changed,
                report.failed_steps or "none",
            )
        return report

    def _stats_due(self, now: datetime) -> bool:
        return self._last_stats_at is None or now - self._last_stats_at >= STATS_PASS_INTERVAL

    async def _step(self, report: TickReport, name: str, coro, default):
        try:
            return await coro
        except Exception:
            logger.exception("Scheduler step %r failed", name)
            report.failed_steps.append(name)
            return default
