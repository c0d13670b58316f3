"""Detected release registry.

Every release ever seen on a provider catalog gets one row here, keyed by
(creator, provider, external id). Rows are never deleted; ``was_removed``
tracks whether the release is still listed and never changes status.
"""

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.db.models import DetectedRelease, ReleaseStatus
from catalog_monitor.detect.matcher import MatchResult
from catalog_monitor.ingest.base import ReleaseRef

logger = logging.getLogger(__name__)

# Terminal statuses are only reachable from an initial status via a creator action
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ReleaseStatus.UNCONFIRMED: frozenset(ReleaseStatus.TERMINAL),
    ReleaseStatus.AUTO_CONFIRMED: frozenset(ReleaseStatus.TERMINAL),
    ReleaseStatus.CONFIRMED: frozenset(),
    ReleaseStatus.DISPUTED: frozenset(),
    ReleaseStatus.DISMISSED: frozenset(),
}


def can_transition(current_status: str, target_status: str) -> bool:
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


def initial_status(match: MatchResult) -> str:
    return ReleaseStatus.AUTO_CONFIRMED if match.matched else ReleaseStatus.UNCONFIRMED


async def get_detected_release(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    external_release_id: str,
) -> DetectedRelease | None:
    result = await session.execute(
        select(DetectedRelease).where(
            DetectedRelease.creator_id == creator_id,
            DetectedRelease.provider_id == provider_id,
            DetectedRelease.external_release_id == external_release_id,
        )
    )
    return result.scalar_one_or_none()


async def touch(session: AsyncSession, row: DetectedRelease, now: datetime) -> None:
    row.last_seen_at = now
    row.was_removed = False
    await session.flush()


async def record_new(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    release: ReleaseRef,
    match: MatchResult,
    now: datetime,
) -> tuple[DetectedRelease, bool]:
    """
    Insert a detected release, or touch the existing row.

    An existing row (earlier detection, a release that came back after
    removal, or a concurrent insert that won the unique constraint) keeps its
    status and match; only ``last_seen_at`` and ``was_removed`` change.

    Args:
        session: Database session (caller commits)
        creator_id: Creator owning the catalog
        provider_id: Provider the release was seen on
        release: Release as listed on the provider
        match: Matcher outcome for the release
        now: Detection timestamp

    Returns:
        Tuple of (row, created)
    """
    existing = await get_detected_release(session, creator_id, provider_id, release.external_id)
    if existing is not None:
        await touch(session, existing, now)
        return existing, False

    row = DetectedRelease(
        creator_id=creator_id,
        provider_id=provider_id,
        external_release_id=release.external_id,
        title=release.title,
        release_type=release.release_type,
        release_date=release.release_date,
        artwork_ref=release.artwork_ref,
        track_count=release.track_count,
        upc=release.upc,
        lead_isrc=release.lead_isrc,
        matched_catalog_id=match.matched_catalog_id,
        match_confidence=match.confidence,
        status=initial_status(match),
        first_detected_at=now,
        last_seen_at=now,
        was_removed=False,
    )

    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # Another worker inserted the same release between our read and insert
        logger.info(
            "Detected release %s/%s for creator %s already recorded concurrently",
            provider_id,
            release.external_id,
            creator_id,
        )
        existing = await get_detected_release(
            session, creator_id, provider_id, release.external_id
        )
        if existing is None:
            raise
        await touch(session, existing, now)
        return existing, False

    logger.info(
        "Recorded new release %s/%s for creator %s (status=%s, confidence=%s)",
        provider_id,
        release.external_id,
        creator_id,
        row.status,
        row.match_confidence,
    )
    return row, True


async def mark_seen(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    external_ids: Iterable[str],
    now: datetime,
) -> int:
    """Refresh ``last_seen_at`` for releases still listed and clear ``was_removed``."""
    ids = list(external_ids)
    if not ids:
        return 0
    result = await session.execute(
        update(DetectedRelease)
        .where(
            DetectedRelease.creator_id == creator_id,
            DetectedRelease.provider_id == provider_id,
            DetectedRelease.external_release_id.in_(ids),
        )
        .values(last_seen_at=now, was_removed=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def mark_removed(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    external_ids: Iterable[str],
) -> int:
    """Flag releases that dropped off the catalog. Status is left untouched."""
    ids = list(external_ids)
    if not ids:
        return 0
    result = await session.execute(
        update(DetectedRelease)
        .where(
            DetectedRelease.creator_id == creator_id,
            DetectedRelease.provider_id == provider_id,
            DetectedRelease.external_release_id.in_(ids),
        )
        .values(was_removed=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(
            "Marked %d releases removed for creator %s on %s",
            result.rowcount,
            creator_id,
            provider_id,
        )
    return result.rowcount


async def touch_all_present(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    now: datetime,
) -> int:
    """Refresh ``last_seen_at`` for every listed release of an unchanged catalog."""
    result = await session.execute(
        update(DetectedRelease)
        .where(
            DetectedRelease.creator_id == creator_id,
            DetectedRelease.provider_id == provider_id,
            DetectedRelease.was_removed.is_(False),
        )
        .values(last_seen_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
