"""Shared fixtures: a throwaway SQLite database per test and fake collaborators."""

from datetime import date, datetime
from typing import Any, Dict, Optional

import pytest

from catalog_monitor.config import Settings
from catalog_monitor.db.models import Base, CatalogRelease, CatalogTrack
from catalog_monitor.db.session import create_engine, create_session_factory
from catalog_monitor.exceptions import FetchError
from catalog_monitor.ingest.base import CatalogFetcher, FetchResult, ReleaseRef
from catalog_monitor.notify.webhook import DeliveryResult, Notifier

NOW = datetime(2026, 3, 4, 12, 0, 0)

TOKEN_SECRET = "test-action-token-secret-0123456789abcdef"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        log_dir=str(tmp_path),
        admin_api_key="admin-key",
        action_token_secret=TOKEN_SECRET,
        alert_channel="log",
        # SQLite serializes writers; keep cycles sequential in tests
        scan_concurrency=1,
        alert_concurrency=1,
        fetch_timeout_seconds=2.0,
        alert_send_timeout_seconds=2.0,
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


class FakeFetcher(CatalogFetcher):
    """Returns canned catalogs per credential, or raises a queued error."""

    provider_id = "spotify"

    def __init__(self, settings: Optional[Settings] = None):
        self.catalogs: Dict[str, list[ReleaseRef]] = {}
        self.errors: list[Exception] = []
        self.calls: list[str] = []

    async def fetch(self, credential_ref: str) -> FetchResult:
        self.calls.append(credential_ref)
        if self.errors:
            raise self.errors.pop(0)
        if credential_ref not in self.catalogs:
            raise FetchError(f"no catalog for {credential_ref}")
        return FetchResult(releases=list(self.catalogs[credential_ref]))


class FakeNotifier(Notifier):
    """Records deliveries; fails when told to."""

    channel = "fake"

    def __init__(self):
        self.sent: list[tuple[Dict[str, Any], Dict[str, str]]] = []
        self.fail_with: Optional[str] = None

    async def send(self, alert_payload, action_urls) -> DeliveryResult:
        if self.fail_with:
            return DeliveryResult(success=False, error=self.fail_with)
        self.sent.append((alert_payload, action_urls))
        return DeliveryResult(success=True, message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def notifier():
    return FakeNotifier()


def make_release(
    external_id: str,
    title: str = "Untitled",
    release_date: Optional[date] = date(2026, 3, 1),
    upc: Optional[str] = None,
    isrcs: tuple[str, ...] = (),
) -> ReleaseRef:
    return ReleaseRef(
        external_id=external_id,
        title=title,
        release_type="single",
        release_date=release_date,
        track_count=1,
        upc=upc,
        isrcs=isrcs,
    )


async def add_catalog_release(
    session,
    creator_id: str,
    title: str,
    release_date: Optional[date] = None,
    upc: Optional[str] = None,
    isrcs: tuple[str, ...] = (),
    provider_id: Optional[str] = None,
    external_release_id: Optional[str] = None,
) -> CatalogRelease:
    release = CatalogRelease(
        creator_id=creator_id,
        title=title,
        release_date=release_date,
        upc=upc,
        provider_id=provider_id,
        external_release_id=external_release_id,
    )
    for number, isrc in enumerate(isrcs, start=1):
        release.tracks.append(CatalogTrack(title=f"{title} {number}", isrc=isrc, track_number=number))
    session.add(release)
    await session.commit()
    return release
