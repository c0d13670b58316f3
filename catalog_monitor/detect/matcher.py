"""Auto-confirm matcher.

Reconciles a newly detected DSP release against the creator's own
discography. Tiers are tried in strict priority order and the first tier
with a hit wins:

    exact_id    catalog release already linked to this provider + external id
    upc         UPC equality, leading zeros ignored
    isrc        lead track ISRC equals a known catalog track ISRC
    title_date  normalized-title Jaro-Winkler similarity plus a date window

Anything else comes back unmatched with confidence ``none``.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from typing import Optional

from rapidfuzz.distance import JaroWinkler
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.config import Settings
from catalog_monitor.db.models import CatalogRelease, CatalogTrack, MatchConfidence
from catalog_monitor.ingest.base import ReleaseRef

logger = logging.getLogger(__name__)

# "(feat. X)", "[ft. X]", "(featuring X)"
_FEAT_BRACKETED = re.compile(r"[\(\[]\s*(?:feat\.?|ft\.?|featuring)\s[^\)\]]*[\)\]]", re.IGNORECASE)
# trailing "feat. X" without brackets
_FEAT_TAIL = re.compile(r"\s(?:feat\.?|ft\.?|featuring)\s.*$", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """
    Normalize a release title for fuzzy comparison.

    NFKD decomposition, combining marks dropped, lowercased, featured-artist
    credits removed, punctuation stripped and whitespace collapsed.
    """
    if not title:
        return ""
    decomposed = unicodedata.normalize("NFKD", title)
    text = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    text = text.lower()
    text = _FEAT_BRACKETED.sub(" ", text)
    text = _FEAT_TAIL.sub("", text)
    text = _PUNCTUATION.sub(" ", text).replace("_", " ")
    return _WHITESPACE.sub(" ", text).strip()


def normalize_upc(upc: Optional[str]) -> Optional[str]:
    """Strip whitespace and leading zeros so UPC-A and EAN-13 forms compare equal."""
    if not upc:
        return None
    stripped = upc.strip().lstrip("0")
    return stripped or None


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one detected release."""

    matched: bool
    matched_catalog_id: Optional[int] = None
    confidence: str = MatchConfidence.NONE
    similarity: Optional[float] = None

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls(matched=False)


def _pick_most_recent(candidates: list[tuple[CatalogRelease, float]]) -> tuple[CatalogRelease, float]:
    """Most recent release date first, then highest similarity, then lowest id."""
    return min(
        candidates,
        key=lambda item: (
            -(item[0].release_date or date.min).toordinal(),
            -item[1],
            item[0].id,
        ),
    )


class AutoConfirmMatcher:
    """Tiered matcher against the creator's discography."""

    def __init__(self, settings: Settings):
        self.threshold = settings.title_similarity_threshold
        self.date_window_days = settings.release_date_window_days

    async def match(
        self,
        session: AsyncSession,
        detected: ReleaseRef,
        creator_id: str,
        provider_id: str,
    ) -> MatchResult:
        """
        Match a detected release against the creator's catalog.

        Args:
            session: Database session
            detected: Release as listed on the provider
            creator_id: Owner of the catalog to search
            provider_id: Provider the release was detected on

        Returns:
            MatchResult for the first tier that produced a hit
        """
        result = await self._match_exact_id(session, detected, creator_id, provider_id)
        if result is None:
            result = await self._match_upc(session, detected, creator_id)
        if result is None:
            result = await self._match_isrc(session, detected, creator_id)
        if result is None:
            result = await self._match_title_date(session, detected, creator_id)
        if result is None:
            result = MatchResult.no_match()

        logger.debug(
            "Matched %s/%s for creator %s: confidence=%s catalog_id=%s",
            provider_id,
            detected.external_id,
            creator_id,
            result.confidence,
            result.matched_catalog_id,
        )
        return result

    async def _match_exact_id(
        self,
        session: AsyncSession,
        detected: ReleaseRef,
        creator_id: str,
        provider_id: str,
    ) -> Optional[MatchResult]:
        rows = await session.execute(
            select(CatalogRelease).where(
                CatalogRelease.creator_id == creator_id,
                CatalogRelease.provider_id == provider_id,
                CatalogRelease.external_release_id == detected.external_id,
            )
        )
        candidates = [(release, 1.0) for release in rows.scalars().all()]
        if not candidates:
            return None
        release, _ = _pick_most_recent(candidates)
        return MatchResult(True, release.id, MatchConfidence.EXACT_ID, 1.0)

    async def _match_upc(
        self,
        session: AsyncSession,
        detected: ReleaseRef,
        creator_id: str,
    ) -> Optional[MatchResult]:
        target = normalize_upc(detected.upc)
        if target is None:
            return None

        rows = await session.execute(
            select(CatalogRelease).where(
                CatalogRelease.creator_id == creator_id,
                CatalogRelease.upc.is_not(None),
            )
        )
        # UPCs are stored as given; leading zeros are compared here
        candidates = [
            (release, 1.0)
            for release in rows.scalars().all()
            if normalize_upc(release.upc) == target
        ]
        if not candidates:
            return None
        release, _ = _pick_most_recent(candidates)
        return MatchResult(True, release.id, MatchConfidence.UPC, 1.0)

    async def _match_isrc(
        self,
        session: AsyncSession,
        detected: ReleaseRef,
        creator_id: str,
    ) -> Optional[MatchResult]:
        lead_isrc = detected.lead_isrc
        if not lead_isrc:
            return None

        rows = await session.execute(
            select(CatalogRelease)
            .join(CatalogTrack, CatalogTrack.release_id == CatalogRelease.id)
            .where(
                CatalogRelease.creator_id == creator_id,
                func.upper(CatalogTrack.isrc) == lead_isrc.strip().upper(),
            )
        )
        candidates = [(release, 1.0) for release in rows.scalars().unique().all()]
        if not candidates:
            return None
        release, _ = _pick_most_recent(candidates)
        return MatchResult(True, release.id, MatchConfidence.ISRC, 1.0)

    async def _match_title_date(
        self,
        session: AsyncSession,
        detected: ReleaseRef,
        creator_id: str,
    ) -> Optional[MatchResult]:
        if detected.release_date is None:
            return None
        detected_title = normalize_title(detected.title)
        if not detected_title:
            return None

        rows = await session.execute(
            select(CatalogRelease).where(
                CatalogRelease.creator_id == creator_id,
                CatalogRelease.release_date.is_not(None),
            )
        )

        candidates: list[tuple[CatalogRelease, float]] = []
        for release in rows.scalars().all():
            if abs((release.release_date - detected.release_date).days) > self.date_window_days:
                continue
            similarity = JaroWinkler.normalized_similarity(
                detected_title, normalize_title(release.title)
            )
            if similarity >= self.threshold:
                candidates.append((release, similarity))

        if not candidates:
            return None
        release, similarity = _pick_most_recent(candidates)
        return MatchResult(True, release.id, MatchConfidence.TITLE_DATE, similarity)
