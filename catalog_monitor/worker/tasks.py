"""Scan cycle orchestration.

One cycle recovers stale claims, selects due scan states and scans each of
them with bounded concurrency. A scan claims its row with a conditional
UPDATE, fetches the provider catalog, diffs it against the stored snapshot,
records new releases and queues alerts for the unconfirmed ones, all in the
row's own session.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_monitor import metrics
from catalog_monitor.config import Settings
from catalog_monitor.db.models import (
    AlertType,
    DisabledReason,
    ReleaseStatus,
    ScanState,
    ScanStatus,
    utcnow,
)
from catalog_monitor.detect import registry as release_registry
from catalog_monitor.detect.diff import diff, snapshot_hash
from catalog_monitor.detect.matcher import AutoConfirmMatcher
from catalog_monitor.exceptions import (
    AuthError,
    FetchError,
    RateLimitError,
)
from catalog_monitor.ingest.base import FetchResult, ReleaseRef
from catalog_monitor.ingest.registry import ProviderRegistry
from catalog_monitor.logging_config import get_logger
from catalog_monitor.notify.dispatcher import AlertDispatcher
from catalog_monitor.worker.scan_watchdog import recover_stale_scans

logger = logging.getLogger(__name__)

# Delay before the next attempt, keyed by consecutive failures. Failure 1
# uses the row's normal interval; from MAX_FAILURES on the row is disabled.
BACKOFF_HOURS = {2: 24, 3: 48, 4: 72}
MAX_FAILURES = 5

SKIPPED = "skipped"
SUCCEEDED = "succeeded"
UNCHANGED = "unchanged"
FAILED = "failed"
DISABLED = "disabled"


def next_scan_delay(consecutive_failures: int, interval_hours: int) -> Optional[timedelta]:
    """
    Backoff after a failed scan.

    Returns:
        Delay until the next attempt, or None when the row should be disabled
    """
    if consecutive_failures >= MAX_FAILURES:
        return None
    if consecutive_failures in BACKOFF_HOURS:
        return timedelta(hours=BACKOFF_HOURS[consecutive_failures])
    return timedelta(hours=interval_hours)


@dataclass
class ScanOutcome:
    """Result of scanning one scan state."""

    status: str
    new_releases: int = 0
    alerts_enqueued: int = 0


@dataclass
class ScanCycleSummary:
    """Counts from one scan cycle."""

    recovered: int = 0
    selected: int = 0
    claimed: int = 0
    skipped: int = 0
    succeeded: int = 0
    unchanged: int = 0
    failed: int = 0
    disabled: int = 0
    new_releases: int = 0
    alerts_enqueued: int = 0

    def add(self, outcome: ScanOutcome) -> None:
        if outcome.status == SKIPPED:
            self.skipped += 1
            return
        self.claimed += 1
        if outcome.status == SUCCEEDED:
            self.succeeded += 1
        elif outcome.status == UNCHANGED:
            self.succeeded += 1
            self.unchanged += 1
        elif outcome.status == DISABLED:
            self.failed += 1
            self.disabled += 1
        else:
            self.failed += 1
        self.new_releases += outcome.new_releases
        self.alerts_enqueued += outcome.alerts_enqueued


def _load_snapshot(raw: Optional[list]) -> list[ReleaseRef]:
    snapshot = []
    for item in raw or []:
        try:
            snapshot.append(ReleaseRef.from_dict(item))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Dropping unreadable snapshot entry {item!r}: {e}")
    return snapshot


class ScanOrchestrator:
    """Runs scan cycles over enrolled creators."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        dispatcher: AlertDispatcher,
        matcher: Optional[AutoConfirmMatcher] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.providers = providers
        self.dispatcher = dispatcher
        self.matcher = matcher or AutoConfirmMatcher(settings)

    async def run_scan_cycle(self, now: Optional[datetime] = None) -> ScanCycleSummary:
        """
        Run one scan cycle.

        Args:
            now: Cycle timestamp (naive UTC), defaults to the current time

        Returns:
            ScanCycleSummary with per-outcome counts
        """
        now = now or utcnow()
        summary = ScanCycleSummary()
        summary.recovered = await recover_stale_scans(
            self.session_factory, now, self.settings.scan_stale_after_minutes
        )

        async with self.session_factory() as db:
            result = await db.execute(
                select(ScanState.id)
                .where(
                    ScanState.next_scan_at <= now,
                    ScanState.disabled.is_(False),
                    ScanState.status != ScanStatus.SCANNING,
                )
                .order_by(ScanState.next_scan_at, ScanState.id)
                .limit(self.settings.scan_batch_size)
            )
            state_ids = list(result.scalars().all())

        summary.selected = len(state_ids)
        if not state_ids:
            logger.debug("No scan states due")
            return summary

        semaphore = asyncio.Semaphore(self.settings.scan_concurrency)

        async def bounded(state_id: int) -> ScanOutcome:
            async with semaphore:
                try:
                    return await self.scan_one(state_id, now)
                except Exception as e:
                    logger.exception(f"Scan of state {state_id} aborted: {e}")
                    return ScanOutcome(FAILED)

        outcomes = await asyncio.gather(*(bounded(state_id) for state_id in state_ids))
        for outcome in outcomes:
            summary.add(outcome)

        logger.info(
            "Scan cycle complete: %d selected, %d claimed, %d succeeded (%d unchanged), "
            "%d failed, %d disabled, %d new releases, %d alerts",
            summary.selected,
            summary.claimed,
            summary.succeeded,
            summary.unchanged,
            summary.failed,
            summary.disabled,
            summary.new_releases,
            summary.alerts_enqueued,
        )
        return summary

    async def scan_one(self, state_id: int, now: datetime) -> ScanOutcome:
        """Claim and scan one scan state. A lost claim is a silent skip."""
        async with self.session_factory() as db:
            claim = await db.execute(
                update(ScanState)
                .where(
                    ScanState.id == state_id,
                    ScanState.status.in_(ScanStatus.CLAIMABLE),
                    ScanState.disabled.is_(False),
                )
                .values(status=ScanStatus.SCANNING, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claim.rowcount != 1:
                metrics.scan_claims_skipped_total.inc()
                return ScanOutcome(SKIPPED)

            state = await db.get(ScanState, state_id)
            creator_id = state.creator_id
            provider_id = state.provider_id
            failures = state.consecutive_failures
            interval_hours = state.scan_interval_hours
            log = get_logger(__name__, creator_id=creator_id, provider_id=provider_id)

            try:
                fetched = await self._fetch(provider_id, state.credential_ref)
            except AuthError as e:
                log.warning(f"Auth failure, disabling scans: {e}")
                return await self._record_failure(
                    db, state_id, provider_id, failures, interval_hours, now, e, auth=True
                )
            except (FetchError, RateLimitError) as e:
                log.warning(f"Catalog fetch failed: {e}")
                return await self._record_failure(
                    db, state_id, provider_id, failures, interval_hours, now, e
                )
            except Exception as e:
                log.exception(f"Unexpected error fetching catalog: {e}")
                return await self._record_failure(
                    db, state_id, provider_id, failures, interval_hours, now, e
                )

            try:
                return await self._apply_fetch(db, state, fetched, now)
            except Exception as e:
                log.exception(f"Error applying catalog diff: {e}")
                await db.rollback()
                return await self._record_failure(
                    db, state_id, provider_id, failures, interval_hours, now, e
                )

    async def _fetch(self, provider_id: str, credential_ref: str) -> FetchResult:
        """Fetch with the configured timeout, recording fetch metrics."""
        fetcher = self.providers.get_fetcher(provider_id)
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                fetcher.fetch(credential_ref),
                timeout=self.settings.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            metrics.record_fetch_error(provider_id, "timeout", time.monotonic() - start)
            raise FetchError(
                f"Fetch timed out after {self.settings.fetch_timeout_seconds}s"
            ) from e
        except Exception as e:
            metrics.record_fetch_error(provider_id, type(e).__name__, time.monotonic() - start)
            raise
        metrics.record_fetch_success(provider_id, time.monotonic() - start)
        return result

    async def _apply_fetch(
        self,
        db: AsyncSession,
        state: ScanState,
        fetched: FetchResult,
        now: datetime,
    ) -> ScanOutcome:
        """Diff, record and persist the snapshot in one transaction."""
        creator_id = state.creator_id
        provider_id = state.provider_id
        claim = (state.id, state.claimed_at, state.scan_interval_hours)
        log = get_logger(__name__, creator_id=creator_id, provider_id=provider_id)

        result = diff(fetched.releases, _load_snapshot(state.last_snapshot))

        if state.last_snapshot is not None and result.snapshot_hash == state.last_snapshot_hash:
            await release_registry.touch_all_present(db, creator_id, provider_id, now)
            if not await self._record_success(db, claim, now):
                return ScanOutcome(SKIPPED)
            metrics.record_scan_outcome(provider_id, UNCHANGED)
            return ScanOutcome(UNCHANGED)

        outcome = ScanOutcome(SUCCEEDED)
        failed_ids: set[str] = set()
        for release in result.new_releases:
            try:
                async with db.begin_nested():
                    created, enqueued = await self._process_new_release(
                        db, creator_id, provider_id, release, now
                    )
            except Exception as e:
                # Left out of the snapshot so the next scan sees it as new again
                failed_ids.add(release.external_id)
                log.exception(f"Failed to process release {release.external_id}: {e}")
                continue
            outcome.new_releases += int(created)
            outcome.alerts_enqueued += int(enqueued)

        stored = sorted(
            (r for r in fetched.releases if r.external_id not in failed_ids),
            key=lambda r: r.external_id,
        )
        stored_ids = [r.external_id for r in stored]

        await release_registry.mark_seen(db, creator_id, provider_id, stored_ids, now)
        await release_registry.mark_removed(
            db, creator_id, provider_id, result.removed_external_ids
        )

        if not await self._record_success(
            db,
            claim,
            now,
            last_snapshot=[r.to_dict() for r in stored],
            last_snapshot_hash=snapshot_hash(stored_ids),
        ):
            return ScanOutcome(SKIPPED)

        metrics.record_scan_outcome(provider_id, SUCCEEDED)
        log.info(
            f"Scan complete: {len(fetched.releases)} listed, {outcome.new_releases} new, "
            f"{len(result.removed_external_ids)} removed, {outcome.alerts_enqueued} alerts queued"
        )
        return outcome

    async def _process_new_release(
        self,
        db: AsyncSession,
        creator_id: str,
        provider_id: str,
        release: ReleaseRef,
        now: datetime,
    ) -> tuple[bool, bool]:
        """
        Match, record and alert on one release. Returns (created, alert_enqueued).

        A release already in the registry (e.g. one that came back after being
        removed) is only touched; it is never matched or alerted again.
        """
        existing = await release_registry.get_detected_release(
            db, creator_id, provider_id, release.external_id
        )
        if existing is not None:
            await release_registry.touch(db, existing, now)
            return False, False

        match = await self.matcher.match(db, release, creator_id, provider_id)
        row, created = await release_registry.record_new(
            db, creator_id, provider_id, release, match, now
        )
        if not created:
            return False, False
        metrics.record_release_detected(provider_id, match.confidence)

        enqueued = False
        if row.status == ReleaseStatus.UNCONFIRMED:
            alert = await self.dispatcher.enqueue(db, row, AlertType.NEW_RELEASE, now)
            enqueued = alert is not None
        return created, enqueued

    async def _record_success(
        self,
        db: AsyncSession,
        claim: tuple[int, datetime, int],
        now: datetime,
        **snapshot_values,
    ) -> bool:
        """
        Finish a scan as completed, committing all work done in the session.

        The update is conditional on the row still being ours; if the watchdog
        reset it in the meantime everything is rolled back.
        """
        state_id, claimed_at, interval_hours = claim
        result = await db.execute(
            update(ScanState)
            .where(
                ScanState.id == state_id,
                ScanState.status == ScanStatus.SCANNING,
                ScanState.claimed_at == claimed_at,
            )
            .values(
                status=ScanStatus.COMPLETED,
                claimed_at=None,
                consecutive_failures=0,
                last_error=None,
                last_scan_at=now,
                next_scan_at=now + timedelta(hours=interval_hours),
                **snapshot_values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"Lost claim on scan state {state_id}; discarding scan results")
            return False
        await db.commit()
        return True

    async def _record_failure(
        self,
        db: AsyncSession,
        state_id: int,
        provider_id: str,
        previous_failures: int,
        interval_hours: int,
        now: datetime,
        error: Exception,
        auth: bool = False,
    ) -> ScanOutcome:
        failures = previous_failures + 1
        values = {
            "status": ScanStatus.FAILED,
            "claimed_at": None,
            "consecutive_failures": failures,
            "last_error": f"{type(error).__name__}: {error}"[:2000],
            "last_scan_at": now,
        }

        delay = next_scan_delay(failures, interval_hours)
        if isinstance(error, RateLimitError) and error.retry_after and delay is not None:
            delay = max(delay, timedelta(seconds=error.retry_after))

        disabled_reason = None
        if auth:
            disabled_reason = DisabledReason.AUTH
        elif delay is None:
            disabled_reason = DisabledReason.FAILURES

        if disabled_reason:
            values.update(disabled=True, disabled_reason=disabled_reason, disabled_at=now)
            values["next_scan_at"] = now + timedelta(hours=interval_hours)
        else:
            values["next_scan_at"] = now + delay

        result = await db.execute(
            update(ScanState)
            .where(ScanState.id == state_id, ScanState.status == ScanStatus.SCANNING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            return ScanOutcome(SKIPPED)

        metrics.record_scan_outcome(provider_id, FAILED)
        if disabled_reason:
            metrics.record_scan_state_disabled(disabled_reason)
            logger.warning(
                f"Scan state {state_id} disabled ({disabled_reason}) after {failures} failures"
            )
            return ScanOutcome(DISABLED)
        return ScanOutcome(FAILED)
