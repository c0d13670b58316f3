"""Creator actions on detected releases.

Applies confirm, dispute and dismiss either from the dashboard (creator id
supplied by the auth layer) or from a signed link in an alert. Every action
is idempotent and cancels the release's outstanding alerts in the same
transaction as the status change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_monitor import metrics
from catalog_monitor.config import Settings
from catalog_monitor.db.models import Alert, AlertStatus, DetectedRelease, ReleaseStatus, utcnow
from catalog_monitor.detect.registry import can_transition
from catalog_monitor.exceptions import (
    ActionError,
    DetectedReleaseNotFound,
    InvalidTransitionError,
    TokenAlreadyUsedError,
    TokenInvalidError,
)
from catalog_monitor.notify.tokens import ActionTokenSigner

logger = logging.getLogger(__name__)

ACTION_STATUS = {
    "confirm": ReleaseStatus.CONFIRMED,
    "dispute": ReleaseStatus.DISPUTED,
    "dismiss": ReleaseStatus.DISMISSED,
}


@dataclass(frozen=True)
class ActionResult:
    """Outcome of applying an action."""

    detected_release_id: int
    status: str
    changed: bool
    cancelled_alerts: int = 0


class ActionProcessor:
    """Applies creator actions to detected releases."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        signer: Optional[ActionTokenSigner] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.signer = signer or ActionTokenSigner(settings)

    async def apply(
        self,
        detected_release_id: int,
        creator_id: str,
        action: str,
        notes: Optional[str] = None,
    ) -> ActionResult:
        """
        Apply an action for a creator.

        Args:
            detected_release_id: Release to act on
            creator_id: Creator performing the action
            action: confirm, dispute or dismiss
            notes: Free text stored verbatim on disputes

        Returns:
            ActionResult; ``changed`` is False when the action was already applied

        Raises:
            DetectedReleaseNotFound: Release is unknown or owned by another creator
            InvalidTransitionError: Release already holds a different terminal status
        """
        async with self.session_factory() as db:
            result = await self._apply(db, detected_release_id, creator_id, action, notes)
            await db.commit()
        return result

    async def confirm(self, detected_release_id: int, creator_id: str) -> ActionResult:
        return await self.apply(detected_release_id, creator_id, "confirm")

    async def dispute(
        self, detected_release_id: int, creator_id: str, notes: Optional[str] = None
    ) -> ActionResult:
        return await self.apply(detected_release_id, creator_id, "dispute", notes)

    async def dismiss(self, detected_release_id: int, creator_id: str) -> ActionResult:
        return await self.apply(detected_release_id, creator_id, "dismiss")

    async def _apply(
        self,
        db: AsyncSession,
        detected_release_id: int,
        creator_id: str,
        action: str,
        notes: Optional[str],
    ) -> ActionResult:
        target = ACTION_STATUS.get(action)
        if target is None:
            raise ActionError(f"Unknown action: {action}")

        release = await db.get(DetectedRelease, detected_release_id)
        if release is None or release.creator_id != creator_id:
            metrics.record_release_action(action, "not_found")
            raise DetectedReleaseNotFound(f"Detected release {detected_release_id} not found")

        current = release.status
        if current == target:
            metrics.record_release_action(action, "noop")
            return ActionResult(detected_release_id, current, changed=False)
        if not can_transition(current, target):
            metrics.record_release_action(action, "rejected")
            raise InvalidTransitionError(current, target)

        now = utcnow()
        values = {"status": target, "resolved_at": now}
        if target == ReleaseStatus.DISPUTED:
            values["dispute_notes"] = notes

        updated = await db.execute(
            update(DetectedRelease)
            .where(DetectedRelease.id == detected_release_id, DetectedRelease.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            # A concurrent action moved the row first
            await db.refresh(release)
            if release.status == target:
                metrics.record_release_action(action, "noop")
                return ActionResult(detected_release_id, target, changed=False)
            metrics.record_release_action(action, "rejected")
            raise InvalidTransitionError(release.status, target)

        cancelled = await db.execute(
            update(Alert)
            .where(
                Alert.detected_release_id == detected_release_id,
                Alert.status.in_(AlertStatus.OUTSTANDING),
            )
            .values(status=AlertStatus.CANCELLED, error_message=f"Release {target} by creator")
            .execution_options(synchronize_session=False)
        )
        await db.refresh(release)

        metrics.record_release_action(action, "applied")
        logger.info(
            "Release %s moved %s -> %s by creator %s (%d alerts cancelled)",
            detected_release_id,
            current,
            target,
            creator_id,
            cancelled.rowcount,
        )
        return ActionResult(
            detected_release_id,
            target,
            changed=True,
            cancelled_alerts=cancelled.rowcount or 0,
        )

    async def action_by_token(
        self,
        token: str,
        action: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """
        Apply the action carried by a signed alert link.

        The token is single use: it is consumed in the same transaction as
        the action, so a rejected action leaves it usable.

        Raises:
            TokenInvalidError: Bad signature, wrong action, or superseded nonce
            TokenExpiredError: Token past its expiry
            TokenAlreadyUsedError: A link from this alert was already used
        """
        now = now or utcnow()
        claims = self.signer.verify(token, now)
        if claims.action != action:
            raise TokenInvalidError(f"Token was issued for {claims.action}, not {action}")

        async with self.session_factory() as db:
            alert = await db.get(Alert, claims.alert_id)
            if (
                alert is None
                or alert.detected_release_id != claims.detected_release_id
                or alert.action_token != claims.nonce
            ):
                raise TokenInvalidError("Token does not match an issued alert link")
            if alert.action_taken_at is not None:
                raise TokenAlreadyUsedError("Token has already been used")

            consumed = await db.execute(
                update(Alert)
                .where(
                    Alert.id == alert.id,
                    Alert.action_token == claims.nonce,
                    Alert.action_taken_at.is_(None),
                )
                .values(action_taken_at=now)
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount != 1:
                raise TokenAlreadyUsedError("Token has already been used")

            result = await self._apply(
                db, claims.detected_release_id, claims.creator_id, action, notes
            )
            await db.commit()

        logger.info(f"Applied {action} from alert {claims.alert_id} link")
        return result
