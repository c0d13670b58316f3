"""Tests for the scan cycle."""

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy import select, update

from catalog_monitor.db.models import (
    Alert,
    AlertType,
    DetectedRelease,
    DisabledReason,
    MatchConfidence,
    ReleaseStatus,
    ScanState,
    ScanStatus,
)
from catalog_monitor.exceptions import AuthError, FetchError, RateLimitError
from catalog_monitor.ingest.base import CatalogFetcher, FetchResult
from catalog_monitor.ingest.registry import ProviderRegistry
from catalog_monitor.notify.dispatcher import AlertDispatcher
from catalog_monitor.worker import enrollment
from catalog_monitor.worker.tasks import ScanOrchestrator, next_scan_delay

from conftest import NOW, add_catalog_release, make_release

CREATOR = "creator-1"
ARTIST = "artist-1"


@pytest.fixture
def orchestrator(settings, session_factory, fetcher, notifier):
    providers = ProviderRegistry(settings, factories={"spotify": lambda s: fetcher})
    dispatcher = AlertDispatcher(settings, session_factory, notifier)
    return ScanOrchestrator(settings, session_factory, providers, dispatcher)


async def _enroll(session_factory, creator_id=CREATOR, credential_ref=ARTIST) -> int:
    async with session_factory() as db:
        state, _ = await enrollment.enroll(db, creator_id, "spotify", credential_ref, now=NOW)
        await db.commit()
        return state.id


async def _state(session_factory, state_id) -> ScanState:
    async with session_factory() as db:
        return await db.get(ScanState, state_id)


async def _all(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(model).order_by(model.id))).scalars().all()


def test_backoff_table():
    assert next_scan_delay(1, 12) == timedelta(hours=12)
    assert next_scan_delay(2, 12) == timedelta(hours=24)
    assert next_scan_delay(3, 12) == timedelta(hours=48)
    assert next_scan_delay(4, 12) == timedelta(hours=72)
    assert next_scan_delay(5, 12) is None


async def test_first_scan_records_releases_and_queues_alerts(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1", "One"), make_release("sp-2", "Two")]

    summary = await orchestrator.run_scan_cycle(NOW)

    assert summary.claimed == 1
    assert summary.succeeded == 1
    assert summary.new_releases == 2
    assert summary.alerts_enqueued == 2

    state = await _state(session_factory, state_id)
    assert state.status == ScanStatus.COMPLETED
    assert state.consecutive_failures == 0
    assert state.last_error is None
    assert state.last_scan_at == NOW
    assert state.next_scan_at == NOW + timedelta(hours=24)
    assert [item["external_id"] for item in state.last_snapshot] == ["sp-1", "sp-2"]

    releases = await _all(session_factory, DetectedRelease)
    assert {r.status for r in releases} == {ReleaseStatus.UNCONFIRMED}


async def test_upc_match_auto_confirms_without_alert(session_factory, orchestrator, fetcher):
    await _enroll(session_factory)
    async with session_factory() as db:
        await add_catalog_release(db, CREATOR, "Known", upc="00602445790128")
    fetcher.catalogs[ARTIST] = [make_release("sp-1", "Known (Deluxe)", upc="602445790128")]

    summary = await orchestrator.run_scan_cycle(NOW)

    [release] = await _all(session_factory, DetectedRelease)
    assert release.status == ReleaseStatus.AUTO_CONFIRMED
    assert release.match_confidence == MatchConfidence.UPC
    assert summary.alerts_enqueued == 0
    assert await _all(session_factory, Alert) == []


async def test_back_to_back_cycles_produce_one_alert(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]

    await orchestrator.run_scan_cycle(NOW)
    # Force the row due again within the same alert period
    async with session_factory() as db:
        await db.execute(
            update(ScanState)
            .where(ScanState.id == state_id)
            .values(next_scan_at=NOW, last_snapshot=None, last_snapshot_hash=None)
        )
        await db.commit()
    await orchestrator.run_scan_cycle(NOW + timedelta(minutes=15))

    assert len(await _all(session_factory, DetectedRelease)) == 1
    assert len(await _all(session_factory, Alert)) == 1


async def test_unchanged_catalog_only_touches_last_seen(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]
    await orchestrator.run_scan_cycle(NOW)

    later = NOW + timedelta(hours=24)
    summary = await orchestrator.run_scan_cycle(later)

    assert summary.unchanged == 1
    assert summary.new_releases == 0
    [release] = await _all(session_factory, DetectedRelease)
    assert release.last_seen_at == later
    assert release.first_detected_at == NOW
    assert (await _state(session_factory, state_id)).next_scan_at == later + timedelta(hours=24)


async def test_removed_release_flagged_and_reappearance_clears_flag(
    session_factory, orchestrator, fetcher, monkeypatch
):
    await _enroll(session_factory)
    matched = []
    original = orchestrator.matcher.match

    async def counting_match(session, detected, creator_id, provider_id):
        matched.append(detected.external_id)
        return await original(session, detected, creator_id, provider_id)

    monkeypatch.setattr(orchestrator.matcher, "match", counting_match)

    fetcher.catalogs[ARTIST] = [make_release("sp-1"), make_release("sp-2")]
    await orchestrator.run_scan_cycle(NOW)

    fetcher.catalogs[ARTIST] = [make_release("sp-1")]
    await orchestrator.run_scan_cycle(NOW + timedelta(days=8))
    removed = {r.external_release_id: r for r in await _all(session_factory, DetectedRelease)}
    assert removed["sp-2"].was_removed is True
    assert removed["sp-2"].status == ReleaseStatus.UNCONFIRMED
    assert removed["sp-1"].was_removed is False

    # Back on the catalog two alert periods later
    reappeared_at = NOW + timedelta(days=16)
    fetcher.catalogs[ARTIST] = [make_release("sp-1"), make_release("sp-2")]
    summary = await orchestrator.run_scan_cycle(reappeared_at)

    assert summary.new_releases == 0
    assert summary.alerts_enqueued == 0
    rows = {r.external_release_id: r for r in await _all(session_factory, DetectedRelease)}
    assert len(rows) == 2
    assert all(not r.was_removed for r in rows.values())
    assert rows["sp-2"].last_seen_at == reappeared_at
    assert rows["sp-2"].first_detected_at == NOW
    assert sorted(matched) == ["sp-1", "sp-2"]

    alerts = await _all(session_factory, Alert)
    assert [a.alert_type for a in alerts] == [AlertType.NEW_RELEASE, AlertType.NEW_RELEASE]


async def test_concurrent_claims_only_one_scans(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]

    outcomes = await asyncio.gather(
        orchestrator.scan_one(state_id, NOW),
        orchestrator.scan_one(state_id, NOW),
    )

    assert sorted(o.status for o in outcomes) == ["skipped", "succeeded"]
    assert fetcher.calls == [ARTIST]
    assert len(await _all(session_factory, Alert)) == 1


async def test_three_consecutive_failures_back_off_48h(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.errors = [FetchError("boom"), RateLimitError(), FetchError("boom")]

    now = NOW
    for _ in range(3):
        summary = await orchestrator.run_scan_cycle(now)
        assert summary.failed == 1
        now = (await _state(session_factory, state_id)).next_scan_at

    state = await _state(session_factory, state_id)
    assert state.status == ScanStatus.FAILED
    assert state.consecutive_failures == 3
    assert state.disabled is False
    assert state.next_scan_at == state.last_scan_at + timedelta(hours=48)
    assert "FetchError" in state.last_error


async def test_fifth_failure_disables(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    async with session_factory() as db:
        await db.execute(
            update(ScanState).where(ScanState.id == state_id).values(consecutive_failures=4)
        )
        await db.commit()
    fetcher.errors = [FetchError("still down")]

    summary = await orchestrator.run_scan_cycle(NOW)

    state = await _state(session_factory, state_id)
    assert summary.disabled == 1
    assert state.disabled is True
    assert state.disabled_reason == DisabledReason.FAILURES
    assert (await orchestrator.run_scan_cycle(NOW + timedelta(days=30))).selected == 0


async def test_auth_error_disables_immediately(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.errors = [AuthError("token revoked")]

    summary = await orchestrator.run_scan_cycle(NOW)

    state = await _state(session_factory, state_id)
    assert summary.disabled == 1
    assert state.status == ScanStatus.FAILED
    assert state.disabled is True
    assert state.disabled_reason == DisabledReason.AUTH


async def test_success_after_failure_resets_counter(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.errors = [FetchError("blip")]
    await orchestrator.run_scan_cycle(NOW)

    fetcher.catalogs[ARTIST] = [make_release("sp-1")]
    retry_at = (await _state(session_factory, state_id)).next_scan_at
    await orchestrator.run_scan_cycle(retry_at)

    state = await _state(session_factory, state_id)
    assert state.status == ScanStatus.COMPLETED
    assert state.consecutive_failures == 0
    assert state.last_error is None


async def test_claimed_row_is_skipped(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]
    async with session_factory() as db:
        await db.execute(
            update(ScanState)
            .where(ScanState.id == state_id)
            .values(status=ScanStatus.SCANNING, claimed_at=NOW)
        )
        await db.commit()

    outcome = await orchestrator.scan_one(state_id, NOW)

    assert outcome.status == "skipped"
    assert fetcher.calls == []


async def test_stale_scanning_row_is_recovered(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]
    async with session_factory() as db:
        await db.execute(
            update(ScanState)
            .where(ScanState.id == state_id)
            .values(status=ScanStatus.SCANNING, claimed_at=NOW - timedelta(minutes=31))
        )
        await db.commit()

    summary = await orchestrator.run_scan_cycle(NOW)

    assert summary.recovered == 1
    assert summary.succeeded == 1


async def test_disabled_and_future_rows_not_selected(session_factory, orchestrator, fetcher):
    await _enroll(session_factory)
    other = await _enroll(session_factory, creator_id="creator-2", credential_ref="artist-2")
    async with session_factory() as db:
        await db.execute(
            update(ScanState).where(ScanState.id == other).values(disabled=True)
        )
        await db.commit()
    fetcher.catalogs[ARTIST] = [make_release("sp-1")]

    summary = await orchestrator.run_scan_cycle(NOW - timedelta(minutes=1))
    assert summary.selected == 0

    summary = await orchestrator.run_scan_cycle(NOW)
    assert summary.selected == 1
    assert fetcher.calls == [ARTIST]


class HangingFetcher(CatalogFetcher):
    provider_id = "spotify"

    async def fetch(self, credential_ref: str) -> FetchResult:
        await asyncio.sleep(10)
        return FetchResult(releases=[])


async def test_fetch_timeout_counts_as_failure(session_factory, settings, notifier):
    settings.fetch_timeout_seconds = 0.05
    providers = ProviderRegistry(settings, factories={"spotify": lambda s: HangingFetcher()})
    orchestrator = ScanOrchestrator(
        settings, session_factory, providers, AlertDispatcher(settings, session_factory, notifier)
    )
    state_id = await _enroll(session_factory)

    summary = await orchestrator.run_scan_cycle(NOW)

    state = await _state(session_factory, state_id)
    assert summary.failed == 1
    assert state.consecutive_failures == 1
    assert "timed out" in state.last_error


async def test_failing_release_is_isolated_and_retried(session_factory, orchestrator, fetcher, monkeypatch):
    await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1"), make_release("sp-bad"), make_release("sp-3")]

    original = orchestrator.matcher.match

    async def flaky_match(session, detected, creator_id, provider_id):
        if detected.external_id == "sp-bad":
            raise RuntimeError("matcher exploded")
        return await original(session, detected, creator_id, provider_id)

    monkeypatch.setattr(orchestrator.matcher, "match", flaky_match)
    summary = await orchestrator.run_scan_cycle(NOW)

    assert summary.succeeded == 1
    assert summary.new_releases == 2
    ids = {r.external_release_id for r in await _all(session_factory, DetectedRelease)}
    assert ids == {"sp-1", "sp-3"}

    monkeypatch.setattr(orchestrator.matcher, "match", original)
    summary = await orchestrator.run_scan_cycle(NOW + timedelta(hours=24))
    assert summary.new_releases == 1
    ids = {r.external_release_id for r in await _all(session_factory, DetectedRelease)}
    assert ids == {"sp-1", "sp-bad", "sp-3"}


async def test_release_dates_survive_snapshot_round_trip(session_factory, orchestrator, fetcher):
    state_id = await _enroll(session_factory)
    fetcher.catalogs[ARTIST] = [make_release("sp-1", release_date=date(2025, 12, 31))]
    await orchestrator.run_scan_cycle(NOW)

    state = await _state(session_factory, state_id)
    assert state.last_snapshot[0]["release_date"] == "2025-12-31"
