import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import get_store
from engine.orchestrator import ETLStateMachineService
from schemas.engine import StateMachineConfig

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Periodic sweeps for locks, sessions, stale runs and retention"""

    def __init__(self, service: ETLStateMachineService = None, interval_minutes: int = None):
        self.scheduler = AsyncIOScheduler()
        self.service = service or ETLStateMachineService(
            get_store(), StateMachineConfig.from_settings(settings)
        )
        self.interval_minutes = interval_minutes or settings.MAINTENANCE_INTERVAL_MINUTES

    async def release_locks_job(self):
        """Release expired locks and abandoned processing sessions"""
        try:
            locks = await self.service.release_expired_locks()
            sessions = await self.service.clear_stale_processing_sessions()
            logger.info(f"Scheduler: released locks {locks}, cleared sessions {sessions}")
        except Exception as e:
            logger.error(f"Scheduler: lock sweep failed - {e}")

    async def stale_runs_job(self):
        """Fail runs stuck in a processing state"""
        try:
            released = await self.service.release_stale_runs()
            if released:
                logger.info(f"Scheduler: failed {len(released)} stale runs")
        except Exception as e:
            logger.error(f"Scheduler: stale run sweep failed - {e}")

    async def dead_letter_job(self):
        """Promote marked dead-letter entries and prune old ones"""
        try:
            promoted = await self.service.process_marked_dlq_entries()
            pruned = await self.service.cleanup_old_dlq_entries()
            logger.info(f"Scheduler: promoted {promoted}, pruned {pruned} dead-letter entries")
        except Exception as e:
            logger.error(f"Scheduler: dead-letter job failed - {e}")

    async def audit_retention_job(self):
        try:
            deleted = await self.service.cleanup_old_audit_records()
            logger.info(f"Scheduler: pruned {deleted} audit entries")
        except Exception as e:
            logger.error(f"Scheduler: audit retention job failed - {e}")

    def start(self):
        """Start the scheduler"""
        jobs = {
            "release_locks": (self.release_locks_job, self.interval_minutes),
            "stale_runs": (self.stale_runs_job, self.interval_minutes),
            "dead_letter": (self.dead_letter_job, self.interval_minutes),
            "audit_retention": (self.audit_retention_job, 24 * 60),
        }
        for job_id, (func, minutes) in jobs.items():
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(minutes=minutes),
                id=job_id,
                replace_existing=True
            )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Maintenance scheduler stopped")
