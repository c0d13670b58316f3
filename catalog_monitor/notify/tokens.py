"""Signed, single-use action tokens for alert links."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from catalog_monitor.config import Settings
from catalog_monitor.db.models import utcnow
from catalog_monitor.exceptions import TokenExpiredError, TokenInvalidError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACTIONS = ("confirm", "dispute")


@dataclass(frozen=True)
class ActionClaims:
    """Verified contents of an action token."""

    alert_id: int
    detected_release_id: int
    creator_id: str
    action: str
    nonce: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedTokens:
    """Token pair issued for one alert delivery."""

    nonce: str
    expires_at: datetime
    tokens: dict[str, str]


def new_nonce() -> str:
    return secrets.token_hex(16)


class ActionTokenSigner:
    """Issues and verifies HS256 JWTs bound to an alert, release, creator and action."""

    def __init__(self, settings: Settings):
        self._secret = settings.action_token_secret
        self.ttl = timedelta(hours=settings.action_token_ttl_hours)

    def _require_secret(self) -> str:
        if not self._secret:
            raise TokenInvalidError("action_token_secret is not configured")
        return self._secret

    def issue(
        self,
        alert_id: int,
        detected_release_id: int,
        creator_id: str,
        now: datetime,
        actions: tuple[str, ...] = ACTIONS,
    ) -> IssuedTokens:
        """
        Issue one token per action, all sharing a fresh nonce.

        Args:
            alert_id: Alert the links are delivered with
            detected_release_id: Release the actions apply to
            creator_id: Creator allowed to act
            now: Naive UTC issue time
            actions: Actions to issue tokens for

        Returns:
            IssuedTokens with the nonce to persist on the alert
        """
        secret = self._require_secret()
        nonce = new_nonce()
        expires_at = now + self.ttl
        issued_at = now.replace(tzinfo=timezone.utc)

        tokens = {}
        for action in actions:
            payload: dict[str, Any] = {
                "alert_id": alert_id,
                "release_id": detected_release_id,
                "creator_id": creator_id,
                "action": action,
                "jti": nonce,
                "iat": issued_at,
                "exp": expires_at.replace(tzinfo=timezone.utc),
            }
            tokens[action] = jwt.encode(payload, secret, algorithm=ALGORITHM)

        return IssuedTokens(nonce=nonce, expires_at=expires_at, tokens=tokens)

    def verify(self, token: str, now: Optional[datetime] = None) -> ActionClaims:
        """
        Verify signature and expiry and return the bound claims.

        Expiry is checked against ``now`` (naive UTC, defaults to the current
        time) so callers evaluating at a fixed instant get a stable answer.

        Raises:
            TokenExpiredError: Token is past its expiry
            TokenInvalidError: Signature, format or claims are invalid
        """
        secret = self._require_secret()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "jti"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            raise TokenInvalidError(f"Invalid action token: {e}") from e

        try:
            claims = ActionClaims(
                alert_id=int(payload["alert_id"]),
                detected_release_id=int(payload["release_id"]),
                creator_id=str(payload["creator_id"]),
                action=str(payload["action"]),
                nonce=str(payload["jti"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(
                    tzinfo=None
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenInvalidError("Action token is missing required claims") from e

        if claims.expires_at <= (now or utcnow()):
            raise TokenExpiredError("Action token has expired")
        return claims
