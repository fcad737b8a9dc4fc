"""APScheduler integration.

Candle cycles run as long-lived asyncio tasks; the scheduler only drives
the stop-loss price ticks, one interval job per pair job.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def _job_id(name: str) -> str:
    return f"price_{name}"


def add_price_job(job, seconds: float):
    """Add or replace the price-tick job for a pair job."""
    job_id = _job_id(job.name)
    scheduler.add_job(
        job.on_price_tick,
        trigger=IntervalTrigger(seconds=seconds),
        id=job_id,
        name=f"Stop-loss watch {job.name}",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=int(max(seconds, 1)),
    )
    logger.info(f"Scheduled price checks for {job.name} every {seconds:g}s")


def remove_price_job(name: str):
    job_id = _job_id(name)
    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)
        logger.info(f"Removed price checks for {name}")


def start_scheduler():
    if not scheduler.running:
        scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
