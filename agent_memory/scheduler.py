"""
Maintenance Scheduler - periodic upkeep for the memory layer.

Uses APScheduler (in-process, no job persistence) to:
- Auto-prune dormant memories
- Run consolidation/reflection when their thresholds are reached
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "memory_maintenance"


class MaintenanceScheduler:
    """Runs MemoryManager maintenance on an interval."""

    def __init__(self, manager, interval_hours: Optional[float] = None):
        self.manager = manager
        self.interval_hours = interval_hours or manager.config.maintenance_interval_hours
        self.scheduler = AsyncIOScheduler()
        self.last_run: Optional[datetime] = None

    async def start(self):
        """Start the scheduler."""
        self.scheduler.add_job(
            self.run_maintenance,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id=MAINTENANCE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (every {self.interval_hours}h)")

    async def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")

    async def run_maintenance(self) -> dict:
        """One maintenance pass. Each step is isolated from the others."""
        summary = {"pruned": 0, "consolidated": 0, "reflected": 0}
        config = self.manager.config

        if config.auto_prune:
            try:
                result = await self.manager.prune()
                summary["pruned"] = result.removed
            except Exception as e:
                logger.error(f"Scheduled prune failed: {e}")

        try:
            result = await self.manager.consolidate()
            if result:
                summary["consolidated"] = result.stored
        except Exception as e:
            logger.error(f"Scheduled consolidation failed: {e}")

        try:
            result = await self.manager.reflect()
            if result:
                summary["reflected"] = result.stored
        except Exception as e:
            logger.error(f"Scheduled reflection failed: {e}")

        self.last_run = datetime.now()
        logger.info(f"Maintenance done: {summary}")
        return summary

    def get_next_run(self) -> Optional[datetime]:
        job = self.scheduler.get_job(MAINTENANCE_JOB_ID)
        return job.next_run_time if job else None
