# backend/callintel/tasks/stale_job_reaper.py
"""
Background task that settles pipeline jobs left in ``running`` by a worker
that crashed or was restarted mid-attempt.
"""

import asyncio
import logging
from typing import Optional

from callintel.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


async def reap_stale_jobs(orchestrator: JobOrchestrator, timeout_seconds: float, interval_seconds: float):
    """Periodically return stale running jobs to the queue, or fail them"""

    while True:
        try:
            settled = await orchestrator.requeue_stale_jobs(timeout_seconds)
            if settled:
                logger.info(f"✅ Stale job sweep settled {settled} jobs")
        except Exception as e:
            logger.error(f"❌ Error in stale job sweep: {e}")

        await asyncio.sleep(interval_seconds)


reaper_task: Optional[asyncio.Task] = None


def start_reaper_task(orchestrator: JobOrchestrator, timeout_seconds: float, interval_seconds: float):
    """Start the reaper task"""
    global reaper_task
    if reaper_task is None:
        reaper_task = asyncio.create_task(
            reap_stale_jobs(orchestrator, timeout_seconds, interval_seconds)
        )
        logger.info("✅ Stale job reaper started")


async def stop_reaper_task():
    """Stop the reaper task and wait for an in-flight sweep to unwind"""
    global reaper_task
    if reaper_task:
        task, reaper_task = reaper_task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("✅ Stale job reaper stopped")
