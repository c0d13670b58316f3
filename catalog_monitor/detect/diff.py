"""Snapshot diffing for catalog change detection.

Pure functions: given the current fetch and the stored snapshot, compute
which releases are new, which disappeared, and a stable hash of the
current id set used to short-circuit unchanged catalogs.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Iterable

from catalog_monitor.ingest.base import ReleaseRef


@dataclass(frozen=True)
class SnapshotDiff:
    """Result of comparing a fetch against the stored snapshot."""

    new_releases: list[ReleaseRef] = field(default_factory=list)
    removed_external_ids: list[str] = field(default_factory=list)
    snapshot_hash: str = ""

    @property
    def has_changes(self) -> bool:
        return bool(self.new_releases or self.removed_external_ids)


def snapshot_hash(external_ids: Iterable[str]) -> str:
    """
    SHA-256 over the sorted, de-duplicated id set.

    The ids are JSON-encoded so that no separator inside an id can make two
    different id sets hash the same input.
    """
    payload = json.dumps(sorted(set(external_ids)), separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def diff(current: list[ReleaseRef], last_snapshot: list[ReleaseRef]) -> SnapshotDiff:
    """
    Compare the current catalog against the last snapshot.

    Args:
        current: Releases returned by the fetcher
        last_snapshot: Releases stored from the previous successful scan

    Returns:
        SnapshotDiff with new releases (in current order), removed ids
        (in snapshot order) and the hash of the current id set
    """
    current_ids = {release.external_id for release in current}
    snapshot_ids = {release.external_id for release in last_snapshot}

    new_releases: list[ReleaseRef] = []
    seen_new: set[str] = set()
    for release in current:
        if release.external_id in snapshot_ids or release.external_id in seen_new:
            continue
        seen_new.add(release.external_id)
        new_releases.append(release)

    removed: list[str] = []
    for release in last_snapshot:
        if release.external_id not in current_ids and release.external_id not in removed:
            removed.append(release.external_id)

    return SnapshotDiff(
        new_releases=new_releases,
        removed_external_ids=removed,
        snapshot_hash=snapshot_hash(current_ids),
    )
