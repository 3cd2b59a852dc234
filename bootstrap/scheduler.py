import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from bootstrap.service import BootstrapService

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Periodically refreshes the local catalog through the bootstrap service"""

    def __init__(self, service: BootstrapService, interval_minutes: int):
        self.service = service
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()

    async def refresh_job(self):
        """Job to refresh the catalog; joins a run that is already in flight"""
        logger.info("Scheduler: Starting catalog refresh")
        handle = await self.service.start(force=False)
        result = await handle.wait()
        if result.ok:
            logger.info(f"Scheduler: Catalog refresh {result.run_id} completed")
        else:
            logger.error(f"Scheduler: Catalog refresh {result.run_id} failed - {result.error.kind}: {result.error.message}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.refresh_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="catalog_refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Refresh scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Refresh scheduler stopped")
