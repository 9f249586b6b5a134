"""
Run the maintenance scheduler until interrupted
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from engine.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


async def run_maintenance(run_once: bool = False):
    """Start the sweeps; with ``run_once`` execute each job a single time"""
    scheduler = MaintenanceScheduler()

    if run_once:
        try:
            await scheduler.release_locks_job()
            await scheduler.stale_runs_job()
            await scheduler.dead_letter_job()
            await scheduler.audit_retention_job()
        finally:
            await scheduler.service.store.close()
        return

    scheduler.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        scheduler.stop()
        await scheduler.service.store.close()


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(run_maintenance(run_once="--once" in sys.argv))
    except KeyboardInterrupt:
        logger.info("Maintenance stopped by user")
