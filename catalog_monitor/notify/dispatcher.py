"""Alert dispatcher.

Alerts are written as ``pending`` rows by the scan cycle and delivered by a
separate alert cycle. Every state change is a conditional UPDATE on the
alert row, so overlapping cycles and concurrent creator actions can never
deliver the same alert twice or resurrect a cancelled one.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_monitor import metrics
from catalog_monitor.config import Settings
from catalog_monitor.db.models import (
    Alert,
    AlertStatus,
    AlertType,
    DetectedRelease,
    ReleaseStatus,
    utcnow,
)
from catalog_monitor.logging_config import get_logger
from catalog_monitor.notify.dedupe import dedup_key, period_index, period_start
from catalog_monitor.notify.eligibility import EligibilityGate, EnrollmentEligibility
from catalog_monitor.notify.formatters import format_alert_payload
from catalog_monitor.notify.tokens import ActionTokenSigner
from catalog_monitor.notify.webhook import DeliveryResult, Notifier, build_action_urls
from catalog_monitor.worker.scan_watchdog import recover_stale_alerts

logger = logging.getLogger(__name__)


@dataclass
class AlertCycleSummary:
    """Counts from one alert cycle."""

    recovered: int = 0
    selected: int = 0
    skipped: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0


class AlertDispatcher:
    """Enqueues and delivers release alerts."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        eligibility: Optional[EligibilityGate] = None,
        signer: Optional[ActionTokenSigner] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.notifier = notifier
        self.eligibility = eligibility or EnrollmentEligibility()
        self.signer = signer or ActionTokenSigner(settings)

    @property
    def channel(self) -> str:
        return self.notifier.channel or self.settings.alert_channel

    async def enqueue(
        self,
        session: AsyncSession,
        release: DetectedRelease,
        alert_type: str,
        now: datetime,
    ) -> Optional[Alert]:
        """
        Insert a pending alert unless one with the same dedup key exists.

        The insert runs in a savepoint; a unique violation on ``dedup_key``
        means the alert is already queued and is treated as success. The
        caller owns the outer transaction.

        Returns:
            The new Alert, or None if it was deduplicated
        """
        key = dedup_key(
            release.creator_id,
            release.provider_id,
            release.external_release_id,
            alert_type,
            period_index(now, self.settings.alert_period_days),
        )
        alert = Alert(
            detected_release_id=release.id,
            alert_type=alert_type,
            channel=self.channel,
            status=AlertStatus.PENDING,
            scheduled_for=now + timedelta(minutes=self.settings.alert_delay_minutes),
            dedup_key=key,
        )

        try:
            async with session.begin_nested():
                session.add(alert)
        except IntegrityError:
            metrics.record_alert_enqueued(alert_type, created=False)
            logger.debug(
                "Alert %s for release %s already queued this period", alert_type, release.id
            )
            return None

        metrics.record_alert_enqueued(alert_type, created=True)
        logger.info(
            "Enqueued %s alert %s for release %s (creator %s)",
            alert_type,
            alert.id,
            release.id,
            release.creator_id,
        )
        return alert

    async def enqueue_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Queue a reminder for every unconfirmed release detected before the
        current period with no alert still pending or sending.

        Returns:
            Number of reminders created
        """
        now = now or utcnow()
        current_period_start = period_start(now, self.settings.alert_period_days)

        outstanding = exists().where(
            and_(
                Alert.detected_release_id == DetectedRelease.id,
                Alert.status.in_(AlertStatus.OUTSTANDING),
            )
        )

        created = 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(DetectedRelease)
                .where(
                    DetectedRelease.status == ReleaseStatus.UNCONFIRMED,
                    DetectedRelease.first_detected_at < current_period_start,
                    ~outstanding,
                )
                .order_by(DetectedRelease.first_detected_at, DetectedRelease.id)
            )
            for release in result.scalars().all():
                if await self.enqueue(db, release, AlertType.REMINDER, now) is not None:
                    created += 1
            await db.commit()

        if created:
            logger.info(f"Enqueued {created} reminder alerts")
        return created

    async def run_alert_cycle(self, now: Optional[datetime] = None) -> AlertCycleSummary:
        """
        Deliver due pending alerts.

        Stale ``sending`` rows are recovered first, then up to
        ``alert_batch_size`` due rows are processed with bounded concurrency.

        Returns:
            AlertCycleSummary with per-outcome counts
        """
        now = now or utcnow()
        summary = AlertCycleSummary()
        summary.recovered = await recover_stale_alerts(
            self.session_factory, now, self.settings.alert_stale_after_minutes
        )

        async with self.session_factory() as db:
            result = await db.execute(
                select(Alert.id)
                .where(
                    Alert.status == AlertStatus.PENDING,
                    Alert.scheduled_for <= now,
                )
                .order_by(Alert.scheduled_for, Alert.id)
                .limit(self.settings.alert_batch_size)
            )
            alert_ids = list(result.scalars().all())

        summary.selected = len(alert_ids)
        if not alert_ids:
            return summary

        semaphore = asyncio.Semaphore(self.settings.alert_concurrency)

        async def bounded(alert_id: int) -> str:
            async with semaphore:
                return await self.process_alert(alert_id, now)

        outcomes = await asyncio.gather(*(bounded(alert_id) for alert_id in alert_ids))
        for outcome in outcomes:
            if outcome == AlertStatus.SENT:
                summary.sent += 1
            elif outcome == AlertStatus.FAILED:
                summary.failed += 1
            elif outcome == AlertStatus.CANCELLED:
                summary.cancelled += 1
            else:
                summary.skipped += 1

        logger.info(
            "Alert cycle complete: %d selected, %d sent, %d failed, %d cancelled, %d skipped",
            summary.selected,
            summary.sent,
            summary.failed,
            summary.cancelled,
            summary.skipped,
        )
        return summary

    async def _finish(
        self,
        db: AsyncSession,
        alert_id: int,
        status: str,
        now: datetime,
        delivery_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move an alert out of ``sending``. Returns False if something else moved it first."""
        values = {"status": status, "error_message": error_message}
        if status == AlertStatus.SENT:
            values["sent_at"] = now
            values["delivery_id"] = delivery_id
        result = await db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.status == AlertStatus.SENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def process_alert(self, alert_id: int, now: datetime) -> str:
        """
        Claim, re-validate and deliver one alert.

        Returns:
            Final status written by this call, or "skipped" when the claim
            was lost or a concurrent update won
        """
        log = get_logger(__name__, alert_id=alert_id)

        async with self.session_factory() as db:
            claim = await db.execute(
                update(Alert)
                .where(Alert.id == alert_id, Alert.status == AlertStatus.PENDING)
                .values(status=AlertStatus.SENDING, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claim.rowcount != 1:
                log.debug("Alert already claimed by another worker")
                return "skipped"

            try:
                alert = await db.get(Alert, alert_id)
                release = await db.get(DetectedRelease, alert.detected_release_id)

                if release.status != ReleaseStatus.UNCONFIRMED:
                    reason = f"Release is {release.status}"
                elif not await self.eligibility.is_eligible(db, release.creator_id):
                    reason = "Creator is no longer eligible"
                else:
                    reason = None

                if reason is not None:
                    if await self._finish(db, alert_id, AlertStatus.CANCELLED, now, error_message=reason):
                        metrics.record_alert_processed(alert.channel, AlertStatus.CANCELLED)
                        log.info(f"Cancelled alert: {reason}")
                        return AlertStatus.CANCELLED
                    return "skipped"

                issued = self.signer.issue(alert.id, release.id, release.creator_id, now)
                stored = await db.execute(
                    update(Alert)
                    .where(Alert.id == alert_id, Alert.status == AlertStatus.SENDING)
                    .values(
                        action_token=issued.nonce,
                        action_token_expires_at=issued.expires_at,
                        action_taken_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if stored.rowcount != 1:
                    log.info("Alert was cancelled before delivery")
                    return "skipped"

                payload = format_alert_payload(alert, release)
                action_urls = build_action_urls(self.settings.action_base_url, issued.tokens)
                delivery = await self._send(payload, action_urls)
            except Exception as e:
                log.exception(f"Error preparing alert for delivery: {e}")
                await db.rollback()
                delivery = DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")
                channel = self.channel
            else:
                channel = alert.channel

            status = AlertStatus.SENT if delivery.success else AlertStatus.FAILED
            if not await self._finish(
                db,
                alert_id,
                status,
                now,
                delivery_id=delivery.message_id,
                error_message=delivery.error,
            ):
                log.info("Alert was cancelled while sending; keeping cancellation")
                return "skipped"

        metrics.record_alert_processed(channel, status)
        if delivery.success:
            log.info(f"Alert delivered via {channel}")
        else:
            log.warning(f"Alert delivery failed: {delivery.error}")
        return status

    async def _send(self, payload: dict, action_urls: dict[str, str]) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                self.notifier.send(payload, action_urls),
                timeout=self.settings.alert_send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return DeliveryResult(
                success=False,
                error=f"Delivery timed out after {self.settings.alert_send_timeout_seconds}s",
            )

    async def close(self) -> None:
        await self.notifier.close()
