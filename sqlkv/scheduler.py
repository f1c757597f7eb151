"""
Scheduled Task Module

Uses APScheduler to run the expired-key cleanup periodically in a background thread.
"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sqlkv.common.errors import KVStoreError
from sqlkv.config import Settings, get_settings
from sqlkv.store import KVStore

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "cleanup_expired_kv"

# Global Scheduler Instance
_scheduler: Optional[BackgroundScheduler] = None


def cleanup_expired_task(settings: Optional[Settings] = None) -> int:
    """
    Scheduled KV Store Cleanup Task

    Opens a short-lived store, deletes expired key-value pairs and closes it.
    The scheduler thread never shares a connection with application stores.

    Returns:
        int: Number of deleted keys, 0 on failure
    """
    settings = settings or get_settings()
    logger.info("Starting scheduled KV store cleanup task")

    try:
        with KVStore(settings) as store:
            deleted_count = store.cleanup_expired()
        logger.info(f"KV store cleanup task completed: {deleted_count} expired keys deleted")
        return deleted_count
    except KVStoreError as e:
        logger.error(f"KV store cleanup task failed: {e.message}", exc_info=True)
        return 0


def start_scheduler(settings: Optional[Settings] = None) -> Optional[BackgroundScheduler]:
    """
    Start Scheduled Task Scheduler

    Nothing is scheduled when the TTL strategy is disabled, since cleanup
    would be a no-op.

    Returns:
        Optional[BackgroundScheduler]: The running scheduler, or None if not started
    """
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already started")
        return _scheduler

    settings = settings or get_settings()
    if not settings.ttl_enabled:
        logger.info("Scheduler not started: TTL cleanup strategy is disabled")
        return None

    _scheduler = BackgroundScheduler(timezone="UTC")

    _scheduler.add_job(
        cleanup_expired_task,
        trigger=IntervalTrigger(seconds=settings.KV_CLEANUP_INTERVAL_SECONDS),
        args=[settings],
        id=CLEANUP_JOB_ID,
        name="Clean up expired KV pairs",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(
        "Scheduler started: KV store cleanup scheduled every "
        f"{settings.KV_CLEANUP_INTERVAL_SECONDS} seconds"
    )
    return _scheduler


def shutdown_scheduler():
    """
    Shutdown Scheduled Task Scheduler

    Gracefully stops all scheduled tasks.
    """
    global _scheduler

    if _scheduler is None:
        return

    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shutdown completed")


def get_scheduler() -> Optional[BackgroundScheduler]:
    """
    Get Scheduler Instance

    Returns:
        Optional[BackgroundScheduler]: Scheduler instance or None
    """
    return _scheduler
