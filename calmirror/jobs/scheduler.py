"""APScheduler setup for background jobs."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calmirror.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    # Backup cadence in case a push notification is missed
    _scheduler.add_job(
        "calmirror.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Calendar Sync",
        replace_existing=True,
    )

    if settings.enable_webhooks:
        _scheduler.add_job(
            "calmirror.jobs.sync_job:renew_expiring_webhooks",
            trigger=IntervalTrigger(hours=settings.webhook_renewal_hours),
            id="webhook_renewal",
            name="Webhook Renewal",
            replace_existing=True,
        )
        # Make sure every source has a channel after startup
        _scheduler.add_job(
            "calmirror.jobs.sync_job:ensure_source_webhooks",
            id="webhook_initial_registration",
            name="Webhook Initial Registration",
            replace_existing=True,
        )
    else:
        logger.info("Webhook jobs disabled (ENABLE_WEBHOOKS=false)")

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
