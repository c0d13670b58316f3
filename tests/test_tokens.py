"""Tests for signed action tokens."""

from datetime import timedelta

import jwt
import pytest

from catalog_monitor.exceptions import TokenExpiredError, TokenInvalidError
from catalog_monitor.notify.tokens import ALGORITHM, ActionTokenSigner

from conftest import NOW, TOKEN_SECRET


@pytest.fixture
def signer(settings):
    return ActionTokenSigner(settings)


def test_issue_binds_claims_per_action(signer, settings):
    issued = signer.issue(7, 42, "creator-1", NOW)

    assert set(issued.tokens) == {"confirm", "dispute"}
    assert issued.expires_at == NOW + timedelta(hours=settings.action_token_ttl_hours)

    for action, token in issued.tokens.items():
        claims = signer.verify(token, NOW)
        assert claims.alert_id == 7
        assert claims.detected_release_id == 42
        assert claims.creator_id == "creator-1"
        assert claims.action == action
        assert claims.nonce == issued.nonce
        assert claims.expires_at == issued.expires_at


def test_each_issue_gets_fresh_nonce(signer):
    first = signer.issue(7, 42, "creator-1", NOW)
    second = signer.issue(7, 42, "creator-1", NOW)

    assert first.nonce != second.nonce


def test_expiry_is_checked_against_given_time(signer, settings):
    issued = signer.issue(7, 42, "creator-1", NOW)
    ttl = timedelta(hours=settings.action_token_ttl_hours)

    signer.verify(issued.tokens["confirm"], NOW + ttl - timedelta(seconds=1))
    with pytest.raises(TokenExpiredError):
        signer.verify(issued.tokens["confirm"], NOW + ttl)


def test_wrong_secret_or_garbage_is_invalid(signer, settings):
    other = ActionTokenSigner(settings.model_copy(update={"action_token_secret": "x" * 40}))
    issued = other.issue(7, 42, "creator-1", NOW)

    with pytest.raises(TokenInvalidError):
        signer.verify(issued.tokens["confirm"], NOW)
    with pytest.raises(TokenInvalidError):
        signer.verify("not-a-token", NOW)


def test_missing_claims_are_invalid(signer):
    token = jwt.encode(
        {"jti": "abc", "exp": 4102444800, "action": "confirm"},
        TOKEN_SECRET,
        algorithm=ALGORITHM,
    )

    with pytest.raises(TokenInvalidError):
        signer.verify(token, NOW)


def test_unconfigured_secret_is_rejected(settings):
    signer = ActionTokenSigner(settings.model_copy(update={"action_token_secret": ""}))

    with pytest.raises(TokenInvalidError):
        signer.issue(7, 42, "creator-1", NOW)
