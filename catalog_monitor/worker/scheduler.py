"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from catalog_monitor.config import Settings
from catalog_monitor.worker.runner import TaskRunner

logger = logging.getLogger(__name__)

WATCHDOG_INTERVAL_MINUTES = 5


def setup_scheduler(settings: Settings, runner: TaskRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Scan cycle every settings.scan_cycle_interval_minutes
    - Alert cycle (reminders, then delivery) every settings.alert_cycle_interval_minutes
    - Stale claim watchdog every WATCHDOG_INTERVAL_MINUTES

    Each job is single-instance within this process; overlapping processes
    coordinate through the conditional row claims.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    scan_interval = max(1, settings.scan_cycle_interval_minutes)
    alert_interval = max(1, settings.alert_cycle_interval_minutes)

    scheduler.add_job(
        runner.scan_cycle,
        IntervalTrigger(minutes=scan_interval),
        id="scan_cycle",
        name="Scan due creator catalogs",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.alert_cycle,
        IntervalTrigger(minutes=alert_interval),
        id="alert_cycle",
        name="Queue reminders and deliver pending alerts",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.watchdog,
        IntervalTrigger(minutes=WATCHDOG_INTERVAL_MINUTES),
        id="claim_watchdog",
        name="Reset stale scan and alert claims",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: scan cycle every %d minutes, alert cycle every %d minutes, "
        "watchdog every %d minutes",
        scan_interval,
        alert_interval,
        WATCHDOG_INTERVAL_MINUTES,
    )
    return scheduler
