"""Enrollment of creators into catalog scanning.

Creates, re-enables and removes ScanState rows. Enrollment is idempotent per
(creator, provider); unenrollment is the only path that deletes a row.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor import metrics
from catalog_monitor.db.models import ScanState, ScanStatus, utcnow

logger = logging.getLogger(__name__)


async def get_scan_state(
    session: AsyncSession, creator_id: str, provider_id: str
) -> Optional[ScanState]:
    result = await session.execute(
        select(ScanState).where(
            ScanState.creator_id == creator_id,
            ScanState.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


async def enroll(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    credential_ref: str,
    scan_interval_hours: int = 24,
    now: Optional[datetime] = None,
) -> tuple[ScanState, bool]:
    """
    Enroll a creator on a provider, due for an immediate first scan.

    An existing row keeps its snapshot; only the credential reference and
    interval are refreshed.

    Returns:
        Tuple of (scan_state, created)
    """
    now = now or utcnow()
    existing = await get_scan_state(session, creator_id, provider_id)
    if existing is not None:
        existing.credential_ref = credential_ref
        existing.scan_interval_hours = scan_interval_hours
        await session.flush()
        return existing, False

    state = ScanState(
        creator_id=creator_id,
        provider_id=provider_id,
        credential_ref=credential_ref,
        scan_interval_hours=scan_interval_hours,
        next_scan_at=now,
        status=ScanStatus.PENDING,
        consecutive_failures=0,
        disabled=False,
    )
    try:
        async with session.begin_nested():
            session.add(state)
    except IntegrityError:
        existing = await get_scan_state(session, creator_id, provider_id)
        if existing is None:
            raise
        return existing, False

    logger.info(f"Enrolled creator {creator_id} on {provider_id} ({credential_ref})")
    return state, True


async def disable(
    session: AsyncSession,
    state: ScanState,
    reason: str,
    now: Optional[datetime] = None,
) -> None:
    """Disable scanning for a row until it is re-enabled."""
    state.disabled = True
    state.disabled_reason = reason
    state.disabled_at = now or utcnow()
    await session.flush()
    metrics.record_scan_state_disabled(reason)
    logger.warning(
        f"Disabled scanning for creator {state.creator_id} on {state.provider_id}: {reason}"
    )


async def re_enable(
    session: AsyncSession,
    creator_id: str,
    provider_id: str,
    credential_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[ScanState]:
    """
    Re-enable a disabled row and make it due immediately.

    Args:
        credential_ref: Replacement credential, e.g. after the creator relinked

    Returns:
        The updated row, or None if the creator is not enrolled
    """
    state = await get_scan_state(session, creator_id, provider_id)
    if state is None:
        return None

    state.disabled = False
    state.disabled_reason = None
    state.disabled_at = None
    state.consecutive_failures = 0
    state.last_error = None
    state.status = ScanStatus.PENDING
    state.claimed_at = None
    state.next_scan_at = now or utcnow()
    if credential_ref:
        state.credential_ref = credential_ref
    await session.flush()

    logger.info(f"Re-enabled scanning for creator {creator_id} on {provider_id}")
    return state


async def unenroll(session: AsyncSession, creator_id: str, provider_id: str) -> bool:
    """Delete the scan state. Detected releases and alerts are kept."""
    result = await session.execute(
        delete(ScanState).where(
            ScanState.creator_id == creator_id,
            ScanState.provider_id == provider_id,
        )
    )
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.info(f"Unenrolled creator {creator_id} from {provider_id}")
    return removed
