"""Periodic driver for waiting runs, scheduled campaigns and queued units."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, Field

from campaign_dispatch.campaigns.engine import CampaignExecutionEngine
from campaign_dispatch.dispatch.queue import WorkerPool
from campaign_dispatch.errors import RepositoryUnavailable
from campaign_dispatch.models import utcnow

from .engine import AutomationEngine

logger = logging.getLogger(__name__)


class TickResult(BaseModel):
    """What one scheduler tick did."""

    at: datetime
    runs_advanced: int = 0
    campaigns_started: int = 0
    units_processed: int = 0
    campaigns_finalized: int = 0
    errors: list[str] = Field(default_factory=list)


class DispatchScheduler:
    """Drives everything that waits on time.

    Usage:
        scheduler = DispatchScheduler(automation, campaigns, pool, interval_seconds=15)
        scheduler.start()   # inside a running event loop
        ...
        scheduler.shutdown()

    A single ``tick`` is also usable on its own (the CLI ``tick`` command and
    tests call it directly with a fixed ``now``).
    """

    JOB_ID = "dispatch_tick"

    def __init__(
        self,
        automation: AutomationEngine,
        campaigns: CampaignExecutionEngine,
        pool: WorkerPool,
        interval_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.automation = automation
        self.campaigns = campaigns
        self.pool = pool
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Advance due runs, start due or stranded campaigns, drain units, settle campaigns."""
        now = now or self.clock()
        result = TickResult(at=now)

        try:
            result.runs_advanced = len(await self.automation.advance_ready(now))
            result.campaigns_started = len(await self.campaigns.start_due(now))
            result.campaigns_started += len(await self.campaigns.resume_stranded())
            result.units_processed = len(await self.pool.drain())
            finalized = self.campaigns.finalize_open()
            result.campaigns_finalized = sum(1 for c in finalized if c.is_terminal)
        except RepositoryUnavailable as e:
            logger.error(f"Scheduler tick aborted: {e.message}")
            result.errors.append(e.message)

        if result.runs_advanced or result.campaigns_started or result.units_processed:
            logger.info(
                f"Tick: {result.runs_advanced} runs, {result.campaigns_started} campaigns "
                f"started, {result.units_processed} units, "
                f"{result.campaigns_finalized} campaigns finished"
            )
        return result

    async def _run_tick(self) -> None:
        await self.tick()

    def start(self) -> None:
        """Start ticking every ``interval_seconds`` on the running event loop."""
        if self._scheduler is not None and self._scheduler.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="dispatch tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Dispatch scheduler started (every {self.interval_seconds}s)")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Dispatch scheduler shutdown")
        self._scheduler = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
