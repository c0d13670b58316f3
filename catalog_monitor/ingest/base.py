"""Base fetcher interface for provider catalog sources."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from catalog_monitor.db.models import utcnow


@dataclass(frozen=True)
class ReleaseRef:
    """One release as listed on a provider catalog."""

    external_id: str
    title: str
    release_type: Optional[str] = None
    release_date: Optional[date] = None
    artwork_ref: Optional[str] = None
    track_count: Optional[int] = None
    upc: Optional[str] = None
    isrcs: tuple[str, ...] = ()

    @property
    def lead_isrc(self) -> Optional[str]:
        """ISRC of the first track, if the provider reported one."""
        return self.isrcs[0] if self.isrcs else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the JSON snapshot column."""
        return {
            "external_id": self.external_id,
            "title": self.title,
            "release_type": self.release_type,
            "release_date": self.release_date.isoformat() if self.release_date else None,
            "artwork_ref": self.artwork_ref,
            "track_count": self.track_count,
            "upc": self.upc,
            "isrcs": list(self.isrcs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseRef":
        """
        Rebuild a ReleaseRef from its snapshot form.

        Raises:
            ValueError: If the external id is missing or a field is malformed
        """
        external_id = data.get("external_id")
        if not external_id:
            raise ValueError("release is missing external_id")
        raw_date = data.get("release_date")
        return cls(
            external_id=str(external_id),
            title=str(data.get("title") or ""),
            release_type=data.get("release_type"),
            release_date=date.fromisoformat(raw_date) if raw_date else None,
            artwork_ref=data.get("artwork_ref"),
            track_count=data.get("track_count"),
            upc=data.get("upc"),
            isrcs=tuple(data.get("isrcs") or ()),
        )


@dataclass
class FetchResult:
    """Complete, de-duplicated catalog returned by a fetcher."""

    releases: list[ReleaseRef]
    fetched_at: datetime = field(default_factory=utcnow)
    rate_limit_remaining: Optional[int] = None


class CatalogFetcher(ABC):
    """Abstract base class for provider catalog fetchers."""

    provider_id: str = ""

    @abstractmethod
    async def fetch(self, credential_ref: str) -> FetchResult:
        """
        Fetch the full catalog for one creator on this provider.

        Implementations page through the provider API internally and return
        every release once.

        Args:
            credential_ref: Provider-side reference for the creator (e.g. artist id)

        Returns:
            FetchResult with the current releases

        Raises:
            FetchError: Network, timeout or unexpected payload
            AuthError: Credential invalid or revoked
            RateLimitError: Provider rate limit hit
        """
        pass

    async def close(self) -> None:
        """Release any HTTP resources held by the fetcher."""
        return None


def dedupe_releases(releases: list[ReleaseRef]) -> list[ReleaseRef]:
    """Drop repeated external ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique: list[ReleaseRef] = []
    for release in releases:
        if release.external_id in seen:
            continue
        seen.add(release.external_id)
        unique.append(release)
    return unique
