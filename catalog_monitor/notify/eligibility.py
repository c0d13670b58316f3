"""Eligibility checks applied right before an alert is delivered."""

from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.db.models import ScanState


class EligibilityGate(ABC):
    """Decides whether a creator may still receive alerts."""

    @abstractmethod
    async def is_eligible(self, session: AsyncSession, creator_id: str) -> bool:
        pass


class EnrollmentEligibility(EligibilityGate):
    """A creator is eligible while at least one enabled scan state exists."""

    async def is_eligible(self, session: AsyncSession, creator_id: str) -> bool:
        result = await session.execute(
            select(ScanState.id)
            .where(
                ScanState.creator_id == creator_id,
                ScanState.disabled.is_(False),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
