"""Spotify Web API catalog fetcher.

Lists an artist's albums, singles and compilations, then enriches them with
UPCs, track counts and the lead track ISRC via the batch album/track endpoints.
"""

import logging
import time
from datetime import date
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from catalog_monitor import metrics
from catalog_monitor.config import Settings
from catalog_monitor.exceptions import AuthError, FetchError, RateLimitError
from catalog_monitor.ingest.base import CatalogFetcher, FetchResult, ReleaseRef, dedupe_releases

logger = logging.getLogger(__name__)

ALBUM_BATCH_SIZE = 20
TRACK_BATCH_SIZE = 50
INCLUDE_GROUPS = "album,single,compilation"


def parse_release_date(value: Optional[str], precision: Optional[str] = None) -> Optional[date]:
    """
    Parse a Spotify release date of day, month or year precision.

    Missing month/day parts default to 1.
    """
    if not value:
        return None
    parts = value.split("-")
    if precision == "year" or len(parts) == 1:
        return date(int(parts[0]), 1, 1)
    if precision == "month" or len(parts) == 2:
        return date(int(parts[0]), int(parts[1]), 1)
    return date.fromisoformat(value)


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _lead_track_id(album: dict[str, Any]) -> Optional[str]:
    """Id of the first track on an album detail record, if well formed."""
    tracks = album.get("tracks")
    items = tracks.get("items") if isinstance(tracks, dict) else None
    if not items or not isinstance(items[0], dict):
        return None
    track_id = items[0].get("id")
    return track_id if isinstance(track_id, str) and track_id else None


@dataclass
class _RateLimit:
    """Last rate limit header seen during one fetch."""

    remaining: Optional[int] = None


class SpotifyFetcher(CatalogFetcher):
    """
    Fetches an artist catalog from the Spotify Web API.

    Uses the client-credentials flow with the app credentials from the
    settings object this fetcher was built with.
    """

    provider_id = "spotify"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.api_base = settings.spotify_api_base.rstrip("/")
        self._http_client = client
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0),
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_token(self) -> str:
        """Return a cached app token, requesting a new one when it is about to expire."""
        if self._access_token and time.monotonic() < self._token_expires_at - 30:
            return self._access_token

        if not self.settings.spotify_client_id or not self.settings.spotify_client_secret:
            raise AuthError("Spotify client credentials are not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self.settings.spotify_accounts_url,
                data={"grant_type": "client_credentials"},
                auth=(self.settings.spotify_client_id, self.settings.spotify_client_secret),
            )
        except httpx.HTTPError as e:
            raise FetchError(f"Spotify token request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise AuthError(f"Spotify rejected client credentials: HTTP {response.status_code}")
        if response.status_code != 200:
            raise FetchError(f"Spotify token request failed: HTTP {response.status_code}")

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3600))
        return self._access_token

    async def _get_json(
        self,
        url: str,
        limits: _RateLimit,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """GET a Spotify API resource and map failures onto the fetch error taxonomy."""
        client = await self._get_client()
        token = await self._get_token()

        try:
            response = await client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise FetchError(f"Spotify request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Spotify request failed: {e}") from e

        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.isdigit():
            limits.remaining = int(remaining)

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError(int(retry_after) if retry_after and retry_after.isdigit() else None)
        if response.status_code in (401, 403):
            # Token may have been revoked server side
            self._access_token = None
            raise AuthError(f"Spotify denied access: HTTP {response.status_code}")
        if response.status_code == 404:
            raise AuthError(f"Spotify resource not found (unlinked or removed artist): {url}")
        if response.status_code >= 400:
            raise FetchError(f"Spotify request failed: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(f"Spotify returned invalid JSON for {url}") from e
        if not isinstance(data, dict):
            raise FetchError(f"Spotify returned an unexpected payload for {url}")
        return data

    async def _list_albums(self, artist_id: str, limits: _RateLimit) -> list[dict[str, Any]]:
        """Page through every album item for an artist."""
        items: list[dict[str, Any]] = []
        url: Optional[str] = f"{self.api_base}/artists/{artist_id}/albums"
        params: Optional[dict[str, Any]] = {
            "include_groups": INCLUDE_GROUPS,
            "limit": self.settings.spotify_page_size,
            "market": self.settings.spotify_market,
        }

        while url:
            page = await self._get_json(url, limits, params=params)
            items.extend(page.get("items") or [])
            url = page.get("next")
            # The next URL already carries the query string
            params = None

        return items

    async def _album_details(self, album_ids: list[str], limits: _RateLimit) -> dict[str, dict[str, Any]]:
        details: dict[str, dict[str, Any]] = {}
        for batch in _chunks(album_ids, ALBUM_BATCH_SIZE):
            data = await self._get_json(
                f"{self.api_base}/albums",
                limits,
                params={"ids": ",".join(batch), "market": self.settings.spotify_market},
            )
            for album in data.get("albums") or []:
                if isinstance(album, dict) and album.get("id"):
                    details[album["id"]] = album
        return details

    async def _track_isrcs(self, track_ids: list[str], limits: _RateLimit) -> dict[str, str]:
        isrcs: dict[str, str] = {}
        for batch in _chunks(track_ids, TRACK_BATCH_SIZE):
            data = await self._get_json(
                f"{self.api_base}/tracks",
                limits,
                params={"ids": ",".join(batch), "market": self.settings.spotify_market},
            )
            for track in data.get("tracks") or []:
                if not isinstance(track, dict):
                    continue
                isrc = (track.get("external_ids") or {}).get("isrc")
                if track.get("id") and isrc:
                    isrcs[track["id"]] = isrc.upper()
        return isrcs

    def _parse_release(
        self,
        item: dict[str, Any],
        detail: Optional[dict[str, Any]],
        isrcs: dict[str, str],
    ) -> ReleaseRef:
        """
        Build a ReleaseRef from an album item and its optional detail record.

        Raises:
            KeyError, TypeError, ValueError: If the item is malformed
        """
        external_id = item["id"]
        title = item["name"]
        if not external_id or not title:
            raise ValueError("album item is missing id or name")

        images = item.get("images") or []
        upc = None
        lead_isrcs: tuple[str, ...] = ()
        track_count = item.get("total_tracks")

        if detail:
            upc = (detail.get("external_ids") or {}).get("upc")
            track_count = detail.get("total_tracks", track_count)
            lead_track_id = _lead_track_id(detail)
            if lead_track_id in isrcs:
                lead_isrcs = (isrcs[lead_track_id],)

        return ReleaseRef(
            external_id=str(external_id),
            title=str(title),
            release_type=item.get("album_type"),
            release_date=parse_release_date(
                item.get("release_date"), item.get("release_date_precision")
            ),
            artwork_ref=images[0]["url"] if images else None,
            track_count=int(track_count) if track_count is not None else None,
            upc=upc,
            isrcs=lead_isrcs,
        )

    async def fetch(self, credential_ref: str) -> FetchResult:
        """
        Fetch the full catalog for a Spotify artist.

        Args:
            credential_ref: Spotify artist id

        Returns:
            FetchResult with one ReleaseRef per album/single/compilation
        """
        limits = _RateLimit()
        items = await self._list_albums(credential_ref, limits)

        album_ids = []
        for item in items:
            album_id = item.get("id") if isinstance(item, dict) else None
            if isinstance(album_id, str) and album_id and album_id not in album_ids:
                album_ids.append(album_id)

        details = await self._album_details(album_ids, limits)

        lead_track_ids = []
        for album in details.values():
            lead_track_id = _lead_track_id(album)
            if lead_track_id:
                lead_track_ids.append(lead_track_id)
        isrcs = await self._track_isrcs(lead_track_ids, limits)

        releases: list[ReleaseRef] = []
        for item in items:
            try:
                detail = details.get(item.get("id")) if isinstance(item, dict) else None
                releases.append(self._parse_release(item, detail, isrcs))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                metrics.malformed_items_total.labels(provider=self.provider_id).inc()
                logger.warning(
                    "Skipping malformed Spotify album item for artist %s: %s (%r)",
                    credential_ref,
                    e,
                    item.get("id") if isinstance(item, dict) else item,
                )

        releases = dedupe_releases(releases)
        logger.info(
            "Fetched %d releases from Spotify for artist %s",
            len(releases),
            credential_ref,
        )
        return FetchResult(
            releases=releases,
            rate_limit_remaining=limits.remaining,
        )
