import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from ingestion.pipeline import SyncPipeline

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Periodically continues an in-progress Stage 3 run"""

    JOB_ID = "sync_continue_job"

    def __init__(self, pipeline: Optional[SyncPipeline] = None, interval_minutes: Optional[int] = None):
        self.scheduler = AsyncIOScheduler()
        self.pipeline = pipeline or SyncPipeline.from_settings()
        self.interval_minutes = interval_minutes or settings.SYNC_INTERVAL_MINUTES

    async def run_sync_job(self):
        """Job to run one continuation invocation"""
        try:
            result = await self.pipeline.run_next()
        except Exception as e:
            logger.error(f"Scheduler: sync job failed - {e}")
            return None

        if result.status != "skipped":
            logger.info(f"Scheduler: sync invocation finished with status {result.status}: {result.message}")
        return result

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {self.interval_minutes} min)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
