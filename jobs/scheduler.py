"""Background job scheduler for the trade security core"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.redirection_expiry import schedule_redirection_expiry
from services.redirection_engine import RedirectionEngine

logger = logging.getLogger(__name__)


class TradeSecurityScheduler:
    """Owns the APScheduler instance; started and stopped with the web server"""

    def __init__(self, redirection_engine: RedirectionEngine):
        self.redirection_engine = redirection_engine

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self) -> None:
        schedule_redirection_expiry(self.scheduler, self.redirection_engine)

    def start(self) -> None:
        """Must be called from a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"✅ SCHEDULER_STARTED: {len(self.scheduler.get_jobs())} jobs")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🔄 SCHEDULER_STOPPED")
