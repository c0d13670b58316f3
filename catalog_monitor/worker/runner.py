"""Task runner wiring the scan, alert and watchdog cycles together."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from catalog_monitor import metrics
from catalog_monitor.actions.processor import ActionProcessor
from catalog_monitor.config import Settings
from catalog_monitor.db.models import utcnow
from catalog_monitor.db.session import create_engine, create_session_factory
from catalog_monitor.ingest.registry import ProviderRegistry
from catalog_monitor.notify.dispatcher import AlertCycleSummary, AlertDispatcher
from catalog_monitor.notify.webhook import Notifier, create_notifier
from catalog_monitor.worker.scan_watchdog import watchdog_check
from catalog_monitor.worker.tasks import ScanCycleSummary, ScanOrchestrator

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Owns the engine, fetchers and notifier for one process and exposes the
    scheduled entry points.

    Every entry point opens its own sessions; nothing is shared between runs
    except the connection pool and HTTP clients.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        providers: Optional[ProviderRegistry] = None,
        notifier: Optional[Notifier] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.providers = providers or ProviderRegistry(settings)
        self.dispatcher = AlertDispatcher(
            settings, session_factory, notifier or create_notifier(settings)
        )
        self.orchestrator = ScanOrchestrator(
            settings, session_factory, self.providers, self.dispatcher
        )
        self.processor = ActionProcessor(settings, session_factory)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskRunner":
        """Build a runner with its own engine for the configured database."""
        engine = create_engine(settings)
        return cls(settings, create_session_factory(engine), engine=engine)

    async def scan_cycle(self) -> ScanCycleSummary:
        """Scheduled entry point for the scan cycle."""
        try:
            summary = await self.orchestrator.run_scan_cycle(utcnow())
        except Exception:
            metrics.record_scheduler_run("scan_cycle", success=False)
            logger.exception("Scan cycle failed")
            raise
        metrics.record_scheduler_run("scan_cycle", success=True)
        return summary

    async def alert_cycle(self) -> AlertCycleSummary:
        """Scheduled entry point: queue due reminders, then deliver pending alerts."""
        now = utcnow()
        try:
            await self.dispatcher.enqueue_reminders(now)
            summary = await self.dispatcher.run_alert_cycle(now)
        except Exception:
            metrics.record_scheduler_run("alert_cycle", success=False)
            logger.exception("Alert cycle failed")
            raise
        metrics.record_scheduler_run("alert_cycle", success=True)
        return summary

    async def watchdog(self) -> tuple[int, int]:
        """Scheduled entry point for the stale-claim sweeps."""
        try:
            recovered = await watchdog_check(self.session_factory, self.settings, utcnow())
        except Exception:
            metrics.record_scheduler_run("watchdog", success=False)
            logger.exception("Watchdog sweep failed")
            raise
        metrics.record_scheduler_run("watchdog", success=True)
        return recovered

    async def close(self) -> None:
        """Clean up resources."""
        await self.providers.close()
        await self.dispatcher.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Task runner closed")
