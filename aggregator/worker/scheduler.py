"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from aggregator.config import settings
from aggregator.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Provider configs are re-read every sync_check_interval_seconds and any
      enabled provider whose sync interval has elapsed gets a background sync
    - The full price comparison, followed by storefront selection, runs every
      comparison_interval_minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    check_interval = max(1, int(settings.sync_check_interval_seconds))
    comparison_interval = max(1, int(settings.comparison_interval_minutes))

    scheduler.add_job(
        runner.run_due_syncs,
        IntervalTrigger(seconds=check_interval),
        id="provider_sync_check",
        name="Start syncs for due providers",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=check_interval,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.scheduled_comparison,
        IntervalTrigger(minutes=comparison_interval),
        id="price_comparison",
        name="Mark best-price packages and select storefront",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: provider sync check every %d seconds, "
        "price comparison every %d minutes",
        check_interval,
        comparison_interval,
    )

    return scheduler
