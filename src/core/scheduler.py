"""Scheduler for periodic consistency sweeps."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.core.config import constants, settings


logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


def cleanup_job_id(user_id: str) -> str:
    return f"{constants.CLEANUP_JOB_PREFIX}:{user_id}"


async def _run_cleanup_job(user_id: str, job: Callable[[], Awaitable[Any]]) -> None:
    """Run one scheduled sweep; failures are logged so the job stays scheduled."""
    try:
        result = await job()
        logger.info("scheduled_cleanup_completed", extra={"user_id": user_id, "result": str(result)})
    except Exception:
        logger.exception("scheduled_cleanup_failed", extra={"user_id": user_id})


def schedule_periodic_cleanup(
    *,
    user_id: str,
    job: Callable[[], Awaitable[Any]],
    interval_hours: int | None = None,
    target: AsyncIOScheduler | None = None,
) -> str:
    """Schedule a recurring cleanup sweep for a user, replacing any existing one.

    Returns:
        The scheduler job id
    """
    target = target or scheduler
    hours = interval_hours or settings.cleanup_interval_hours
    job_id = cleanup_job_id(user_id)
    target.add_job(
        _run_cleanup_job,
        IntervalTrigger(hours=hours),
        args=[user_id, job],
        id=job_id,
        name=f"Periodic cleanup for {user_id}",
        replace_existing=True,
    )
    logger.info("periodic_cleanup_scheduled", extra={"user_id": user_id, "interval_hours": hours, "job_id": job_id})
    return job_id


def cancel_periodic_cleanup(*, user_id: str, target: AsyncIOScheduler | None = None) -> bool:
    """Remove a user's cleanup job. Returns False if none was scheduled."""
    target = target or scheduler
    job_id = cleanup_job_id(user_id)
    if target.get_job(job_id) is None:
        return False
    target.remove_job(job_id)
    logger.info("periodic_cleanup_cancelled", extra={"user_id": user_id, "job_id": job_id})
    return True


def start_scheduler(target: AsyncIOScheduler | None = None) -> None:
    """Start the scheduler. Must be called from within a running event loop."""
    target = target or scheduler
    if target.running:
        return
    logger.info("Starting scheduler")
    target.start()
    logger.info("Scheduler started successfully")


async def stop_scheduler(target: AsyncIOScheduler | None = None) -> None:
    """Stop the scheduler and wait until the event loop has processed the shutdown."""
    target = target or scheduler
    if not target.running:
        return
    logger.info("Stopping scheduler")
    target.shutdown(wait=False)
    # AsyncIOScheduler may defer the shutdown to the loop; queue behind it
    loop = asyncio.get_running_loop()
    settled = loop.create_future()
    loop.call_soon(settled.set_result, None)
    await settled
    logger.info("Scheduler stopped")
