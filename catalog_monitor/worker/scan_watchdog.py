"""Watchdog sweeps that recover rows left behind by crashed workers.

A worker that dies while holding a claim leaves its row in ``scanning`` or
``sending``. Those rows are never selected again by the normal cycles, so the
sweeps below put them back in ``pending`` once their claim is older than the
staleness threshold.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_monitor import metrics
from catalog_monitor.config import Settings
from catalog_monitor.db.models import Alert, AlertStatus, ScanState, ScanStatus

logger = logging.getLogger(__name__)


async def recover_stale_scans(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    stale_after_minutes: int,
) -> int:
    """
    Reset scan states stuck in ``scanning`` back to ``pending``.

    Returns:
        Number of rows recovered
    """
    cutoff = now - timedelta(minutes=stale_after_minutes)
    async with session_factory() as db:
        result = await db.execute(
            update(ScanState)
            .where(
                ScanState.status == ScanStatus.SCANNING,
                ScanState.claimed_at < cutoff,
            )
            .values(status=ScanStatus.PENDING, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    recovered = result.rowcount or 0
    if recovered:
        metrics.scan_states_recovered_total.inc(recovered)
        logger.warning(
            "Watchdog: reset %d scan states stuck in scanning for over %d minutes",
            recovered,
            stale_after_minutes,
        )
    return recovered


async def recover_stale_alerts(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    stale_after_minutes: int,
) -> int:
    """
    Reset alerts stuck in ``sending`` back to ``pending``.

    Returns:
        Number of rows recovered
    """
    cutoff = now - timedelta(minutes=stale_after_minutes)
    async with session_factory() as db:
        result = await db.execute(
            update(Alert)
            .where(
                Alert.status == AlertStatus.SENDING,
                Alert.claimed_at < cutoff,
            )
            .values(status=AlertStatus.PENDING, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    recovered = result.rowcount or 0
    if recovered:
        metrics.alerts_recovered_total.inc(recovered)
        logger.warning(
            "Watchdog: reset %d alerts stuck in sending for over %d minutes",
            recovered,
            stale_after_minutes,
        )
    return recovered


async def watchdog_check(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    now: datetime,
) -> tuple[int, int]:
    """Run both sweeps. Returns (scans_recovered, alerts_recovered)."""
    scans = await recover_stale_scans(session_factory, now, settings.scan_stale_after_minutes)
    alerts = await recover_stale_alerts(session_factory, now, settings.alert_stale_after_minutes)
    return scans, alerts
