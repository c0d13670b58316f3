"""Deduplication keys for alerts.

An alert is identified by the release it is about, its type and the period
it belongs to. The key is stored in a unique column, so inserting the same
alert twice is rejected by the database instead of by an in-process check.
"""

import hashlib
from datetime import datetime, timedelta

EPOCH = datetime(1970, 1, 1)


def period_index(now: datetime, period_days: int) -> int:
    """
    Index of the dedup period containing ``now``.

    Periods are fixed ``period_days`` wide buckets counted from the Unix
    epoch, so every worker computes the same index for the same instant.
    """
    if period_days < 1:
        raise ValueError("period_days must be at least 1")
    return (now - EPOCH).days // period_days


def period_start(now: datetime, period_days: int) -> datetime:
    """Start of the dedup period containing ``now``."""
    return EPOCH + timedelta(days=period_index(now, period_days) * period_days)


def dedup_key(
    creator_id: str,
    provider_id: str,
    external_release_id: str,
    alert_type: str,
    period: int,
) -> str:
    """
    Build the deterministic dedup key for an alert.

    Args:
        creator_id: Creator owning the release
        provider_id: Provider the release was detected on
        external_release_id: Provider-side release id
        alert_type: new_release or reminder
        period: Period index from period_index()

    Returns:
        64 character hex digest
    """
    key_data = "\x1f".join(
        [creator_id, provider_id, external_release_id, alert_type, str(period)]
    )
    return hashlib.sha256(key_data.encode("utf-8")).hexdigest()
