"""API tests through the ASGI app with a test-bound task runner."""

import httpx
import pytest

from catalog_monitor.config import Settings
from catalog_monitor.db.models import AlertType, ReleaseStatus, utcnow
from catalog_monitor.detect import registry
from catalog_monitor.detect.matcher import MatchResult
from catalog_monitor.ingest.registry import ProviderRegistry
from catalog_monitor.main import create_app
from catalog_monitor.worker import enrollment
from catalog_monitor.worker.runner import TaskRunner

from conftest import make_release

CREATOR = "creator-1"
ADMIN = {"X-Admin-API-Key": "admin-key"}


@pytest.fixture(scope="module")
def app():
    return create_app(Settings(_env_file=None), start_scheduler=False)


@pytest.fixture
def runner(settings, session_factory, fetcher, notifier):
    providers = ProviderRegistry(settings, factories={"spotify": lambda s: fetcher})
    return TaskRunner(settings, session_factory, providers=providers, notifier=notifier)


@pytest.fixture
async def client(app, runner):
    app.state.runner = runner
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _seed_release(session_factory, external_id="sp-1", creator_id=CREATOR):
    async with session_factory() as db:
        release, _ = await registry.record_new(
            db, creator_id, "spotify", make_release(external_id), MatchResult.no_match(), utcnow()
        )
        await db.commit()
        return release


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_list_releases_is_scoped_to_creator(client, session_factory):
    await _seed_release(session_factory, "sp-1")
    await _seed_release(session_factory, "sp-2", creator_id="creator-2")

    response = await client.get("/api/releases", headers={"X-Creator-Id": CREATOR})

    assert response.status_code == 200
    assert [r["external_release_id"] for r in response.json()] == ["sp-1"]

    filtered = await client.get(
        "/api/releases", params={"status": "confirmed"}, headers={"X-Creator-Id": CREATOR}
    )
    assert filtered.json() == []


async def test_creator_identity_required(client):
    assert (await client.get("/api/releases")).status_code == 422
    assert (await client.get("/api/releases", headers={"X-Creator-Id": "  "})).status_code == 401


async def test_release_actions_map_errors(client, session_factory):
    release = await _seed_release(session_factory)
    headers = {"X-Creator-Id": CREATOR}

    response = await client.post(f"/api/releases/{release.id}/confirm", headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == ReleaseStatus.CONFIRMED
    assert response.json()["changed"] is True

    again = await client.post(f"/api/releases/{release.id}/confirm", headers=headers)
    assert again.status_code == 200
    assert again.json()["changed"] is False

    conflict = await client.post(f"/api/releases/{release.id}/dismiss", headers=headers)
    assert conflict.status_code == 409

    missing = await client.post(f"/api/releases/{release.id}/confirm", headers={"X-Creator-Id": "other"})
    assert missing.status_code == 404


async def test_dispute_with_notes(client, session_factory):
    release = await _seed_release(session_factory)

    response = await client.post(
        f"/api/releases/{release.id}/dispute",
        json={"notes": "Same name, different artist"},
        headers={"X-Creator-Id": CREATOR},
    )

    assert response.status_code == 200
    listed = await client.get("/api/releases", headers={"X-Creator-Id": CREATOR})
    assert listed.json()[0]["dispute_notes"] == "Same name, different artist"


async def test_action_link_is_single_use(client, session_factory, runner, notifier):
    now = utcnow()
    async with session_factory() as db:
        await enrollment.enroll(db, CREATOR, "spotify", "artist-1", now=now)
        release, _ = await registry.record_new(
            db, CREATOR, "spotify", make_release("sp-1"), MatchResult.no_match(), now
        )
        await runner.dispatcher.enqueue(db, release, AlertType.NEW_RELEASE, now)
        await db.commit()
    await runner.dispatcher.run_alert_cycle(now)

    _, urls = notifier.sent[0]
    path = urls["confirm"].replace("http://localhost:8001", "")

    first = await client.get(path)
    assert first.status_code == 200
    assert first.json()["status"] == ReleaseStatus.CONFIRMED

    second = await client.get(path)
    assert second.status_code == 409


async def test_action_link_validation(client):
    assert (await client.get("/api/actions", params={"token": "x", "action": "dismiss"})).status_code == 422
    assert (await client.get("/api/actions", params={"token": "x", "action": "confirm"})).status_code == 400


async def test_admin_routes_require_key(client):
    assert (await client.get("/api/scans/states", headers={"X-Admin-API-Key": "wrong"})).status_code == 403
    assert (await client.get("/api/scans/states", headers=ADMIN)).status_code == 200


async def test_enroll_scan_and_deliver(client, fetcher, notifier):
    fetcher.catalogs["artist-1"] = [make_release("sp-1", title="Midnight Drive")]

    enrolled = await client.post(
        "/api/scans/states",
        json={"creator_id": CREATOR, "provider_id": "spotify", "credential_ref": "artist-1"},
        headers=ADMIN,
    )
    assert enrolled.status_code == 201
    assert enrolled.json()["scan_interval_hours"] == 24

    unknown = await client.post(
        "/api/scans/states",
        json={"creator_id": CREATOR, "provider_id": "tidal", "credential_ref": "x"},
        headers=ADMIN,
    )
    assert unknown.status_code == 400

    scan = await client.post("/api/scans/run", headers=ADMIN)
    assert scan.status_code == 200
    assert scan.json()["succeeded"] == 1
    assert scan.json()["new_releases"] == 1
    assert scan.json()["alerts_enqueued"] == 1

    alerts = await client.post("/api/scans/alerts/run", headers=ADMIN)
    assert alerts.status_code == 200
    assert alerts.json()["sent"] == 1
    assert notifier.sent[0][0]["release"]["title"] == "Midnight Drive"


async def test_disable_enable_and_unenroll(client, session_factory):
    async with session_factory() as db:
        await enrollment.enroll(db, CREATOR, "spotify", "artist-1")
        await db.commit()
    base = f"/api/scans/states/{CREATOR}/spotify"

    disabled = await client.post(f"{base}/disable", headers=ADMIN)
    assert disabled.json()["disabled"] is True
    assert disabled.json()["disabled_reason"] == "manual"

    enabled = await client.post(f"{base}/enable", json={"credential_ref": "artist-2"}, headers=ADMIN)
    assert enabled.json()["disabled"] is False
    assert enabled.json()["credential_ref"] == "artist-2"

    assert (await client.delete(base, headers=ADMIN)).status_code == 204
    assert (await client.delete(base, headers=ADMIN)).status_code == 404
    assert (await client.post(f"{base}/disable", headers=ADMIN)).status_code == 404
