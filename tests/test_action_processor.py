"""Tests for creator actions and signed action links."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from catalog_monitor.actions.processor import ActionProcessor
from catalog_monitor.db.models import Alert, AlertStatus, AlertType, DetectedRelease, ReleaseStatus
from catalog_monitor.detect import registry
from catalog_monitor.detect.matcher import MatchResult
from catalog_monitor.exceptions import (
    DetectedReleaseNotFound,
    InvalidTransitionError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
)
from catalog_monitor.notify.dispatcher import AlertDispatcher
from catalog_monitor.notify.tokens import ActionTokenSigner
from catalog_monitor.worker import enrollment

from conftest import NOW, make_release

CREATOR = "creator-1"


@pytest.fixture
def processor(settings, session_factory):
    return ActionProcessor(settings, session_factory)


@pytest.fixture
def dispatcher(settings, session_factory, notifier):
    return AlertDispatcher(settings, session_factory, notifier)


async def _release_with_alert(session_factory, dispatcher, external_id="sp-1"):
    async with session_factory() as db:
        await enrollment.enroll(db, CREATOR, "spotify", "artist-1", now=NOW)
        release, _ = await registry.record_new(
            db, CREATOR, "spotify", make_release(external_id), MatchResult.no_match(), NOW
        )
        alert = await dispatcher.enqueue(db, release, AlertType.NEW_RELEASE, NOW)
        await db.commit()
        return release, alert


async def _reload(session_factory, model, row_id):
    async with session_factory() as db:
        return await db.get(model, row_id)


async def test_dispute_not_mine_stores_notes_and_cancels_alert(session_factory, dispatcher, processor):
    release, alert = await _release_with_alert(session_factory, dispatcher)

    result = await processor.dispute(release.id, CREATOR, notes="Not my track, different artist")

    assert result.changed is True
    assert result.status == ReleaseStatus.DISPUTED
    assert result.cancelled_alerts == 1

    stored = await _reload(session_factory, DetectedRelease, release.id)
    assert stored.status == ReleaseStatus.DISPUTED
    assert stored.dispute_notes == "Not my track, different artist"
    assert stored.resolved_at is not None
    assert (await _reload(session_factory, Alert, alert.id)).status == AlertStatus.CANCELLED


async def test_repeating_same_action_is_noop(session_factory, dispatcher, processor):
    release, _ = await _release_with_alert(session_factory, dispatcher)

    first = await processor.confirm(release.id, CREATOR)
    resolved_at = (await _reload(session_factory, DetectedRelease, release.id)).resolved_at
    second = await processor.confirm(release.id, CREATOR)

    assert first.changed is True
    assert second.changed is False
    assert second.status == ReleaseStatus.CONFIRMED
    assert (await _reload(session_factory, DetectedRelease, release.id)).resolved_at == resolved_at


async def test_other_action_on_terminal_status_is_rejected(session_factory, dispatcher, processor):
    release, _ = await _release_with_alert(session_factory, dispatcher)
    await processor.dismiss(release.id, CREATOR)

    with pytest.raises(InvalidTransitionError) as exc:
        await processor.confirm(release.id, CREATOR)

    assert exc.value.current_status == ReleaseStatus.DISMISSED
    assert (await _reload(session_factory, DetectedRelease, release.id)).status == ReleaseStatus.DISMISSED


async def test_auto_confirmed_release_can_still_be_disputed(session_factory, processor):
    async with session_factory() as db:
        release, _ = await registry.record_new(
            db, CREATOR, "spotify", make_release("sp-9"), MatchResult(True, None, "upc", 1.0), NOW
        )
        await db.commit()

    result = await processor.dispute(release.id, CREATOR)

    assert result.status == ReleaseStatus.DISPUTED


async def test_foreign_or_unknown_release_not_found(session_factory, dispatcher, processor):
    release, _ = await _release_with_alert(session_factory, dispatcher)

    with pytest.raises(DetectedReleaseNotFound):
        await processor.confirm(release.id, "someone-else")
    with pytest.raises(DetectedReleaseNotFound):
        await processor.confirm(release.id + 1000, CREATOR)


async def _sent_tokens(session_factory, dispatcher, notifier):
    release, alert = await _release_with_alert(session_factory, dispatcher)
    await dispatcher.run_alert_cycle(NOW)
    _, urls = notifier.sent[-1]
    tokens = {}
    for action, url in urls.items():
        tokens[action] = url.split("token=")[1].split("&")[0]
    return release, alert, tokens


async def test_action_by_token_applies_once(session_factory, dispatcher, notifier, processor):
    release, alert, tokens = await _sent_tokens(session_factory, dispatcher, notifier)
    later = NOW + timedelta(hours=1)

    result = await processor.action_by_token(tokens["confirm"], "confirm", now=later)

    assert result.status == ReleaseStatus.CONFIRMED
    assert (await _reload(session_factory, Alert, alert.id)).action_taken_at == later

    with pytest.raises(TokenAlreadyUsedError):
        await processor.action_by_token(tokens["confirm"], "confirm", now=later)
    # The sibling link shares the nonce and is consumed too
    with pytest.raises(TokenAlreadyUsedError):
        await processor.action_by_token(tokens["dispute"], "dispute", now=later)


async def test_token_bound_to_its_action(session_factory, dispatcher, notifier, processor):
    release, _, tokens = await _sent_tokens(session_factory, dispatcher, notifier)

    with pytest.raises(TokenInvalidError):
        await processor.action_by_token(tokens["confirm"], "dispute", now=NOW)

    assert (await _reload(session_factory, DetectedRelease, release.id)).status == ReleaseStatus.UNCONFIRMED


async def test_expired_token_rejected(session_factory, dispatcher, notifier, processor, settings):
    _, _, tokens = await _sent_tokens(session_factory, dispatcher, notifier)
    expired = NOW + timedelta(hours=settings.action_token_ttl_hours, seconds=1)

    with pytest.raises(TokenExpiredError):
        await processor.action_by_token(tokens["confirm"], "confirm", now=expired)


async def test_tampered_or_foreign_token_rejected(session_factory, dispatcher, notifier, processor, settings):
    _, alert, tokens = await _sent_tokens(session_factory, dispatcher, notifier)

    with pytest.raises(TokenInvalidError):
        await processor.action_by_token(tokens["confirm"][:-3] + "abc", "confirm", now=NOW)

    settings_copy = settings.model_copy(update={"action_token_secret": "another-secret-0123456789abcdef-xyz"})
    forged = ActionTokenSigner(settings_copy).issue(alert.id, alert.detected_release_id, CREATOR, NOW)
    with pytest.raises(TokenInvalidError):
        await processor.action_by_token(forged.tokens["confirm"], "confirm", now=NOW)


async def test_token_with_superseded_nonce_rejected(session_factory, dispatcher, notifier, processor, settings):
    _, alert, _ = await _sent_tokens(session_factory, dispatcher, notifier)
    stale = ActionTokenSigner(settings).issue(alert.id, alert.detected_release_id, CREATOR, NOW)

    with pytest.raises(TokenInvalidError):
        await processor.action_by_token(stale.tokens["confirm"], "confirm", now=NOW)


async def test_rejected_action_leaves_token_usable(session_factory, dispatcher, notifier, processor):
    release, alert, tokens = await _sent_tokens(session_factory, dispatcher, notifier)
    await processor.dismiss(release.id, CREATOR)

    with pytest.raises(InvalidTransitionError):
        await processor.action_by_token(tokens["confirm"], "confirm", now=NOW)

    assert (await _reload(session_factory, Alert, alert.id)).action_taken_at is None
    async with session_factory() as db:
        statuses = (await db.execute(select(Alert.status))).scalars().all()
    assert statuses == [AlertStatus.SENT]
