"""Scan management API endpoints (admin)."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.api.deps import get_database, get_runner, require_admin_api_key
from catalog_monitor.db.models import DisabledReason, ScanState
from catalog_monitor.worker import enrollment
from catalog_monitor.worker.runner import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/scans",
    tags=["scans"],
    dependencies=[Depends(require_admin_api_key)],
)


class ScanStateResponse(BaseModel):
    """Response model for a scan state."""
    id: int
    creator_id: str
    provider_id: str
    credential_ref: str
    status: str
    last_scan_at: Optional[datetime]
    next_scan_at: datetime
    scan_interval_hours: int
    consecutive_failures: int
    last_error: Optional[str]
    disabled: bool
    disabled_reason: Optional[str]
    disabled_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class EnrollRequest(BaseModel):
    """Request model for enrolling a creator."""
    creator_id: str
    provider_id: str
    credential_ref: str
    scan_interval_hours: Optional[int] = Field(default=None, ge=1)


class ReEnableRequest(BaseModel):
    credential_ref: Optional[str] = None


class ScanCycleResponse(BaseModel):
    recovered: int
    selected: int
    claimed: int
    skipped: int
    succeeded: int
    unchanged: int
    failed: int
    disabled: int
    new_releases: int
    alerts_enqueued: int


class AlertCycleResponse(BaseModel):
    reminders_enqueued: int
    recovered: int
    selected: int
    skipped: int
    sent: int
    failed: int
    cancelled: int


async def _get_state_or_404(db: AsyncSession, creator_id: str, provider_id: str) -> ScanState:
    state = await enrollment.get_scan_state(db, creator_id, provider_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Scan state not found")
    return state


@router.get("/states", response_model=List[ScanStateResponse])
async def list_scan_states(
    disabled: Optional[bool] = None,
    creator_id: Optional[str] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_database),
):
    """List scan states, soonest due first."""
    query = select(ScanState).order_by(ScanState.next_scan_at, ScanState.id).limit(limit)
    if disabled is not None:
        query = query.where(ScanState.disabled.is_(disabled))
    if creator_id:
        query = query.where(ScanState.creator_id == creator_id)

    result = await db.execute(query)
    return [ScanStateResponse.model_validate(state) for state in result.scalars().all()]


@router.post("/states", response_model=ScanStateResponse, status_code=201)
async def enroll_creator(
    request: EnrollRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_runner),
):
    """Enroll a creator on a provider."""
    if request.provider_id not in runner.providers.provider_ids:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {request.provider_id}")

    state, _ = await enrollment.enroll(
        db,
        request.creator_id,
        request.provider_id,
        request.credential_ref,
        scan_interval_hours=request.scan_interval_hours or runner.settings.default_scan_interval_hours,
    )
    await db.commit()
    return ScanStateResponse.model_validate(state)


@router.post("/states/{creator_id}/{provider_id}/enable", response_model=ScanStateResponse)
async def re_enable_scan_state(
    creator_id: str,
    provider_id: str,
    request: Optional[ReEnableRequest] = None,
    db: AsyncSession = Depends(get_database),
):
    """Re-enable a disabled scan state and make it due now."""
    state = await enrollment.re_enable(
        db, creator_id, provider_id, credential_ref=request.credential_ref if request else None
    )
    if state is None:
        raise HTTPException(status_code=404, detail="Scan state not found")
    await db.commit()
    return ScanStateResponse.model_validate(state)


@router.post("/states/{creator_id}/{provider_id}/disable", response_model=ScanStateResponse)
async def disable_scan_state(
    creator_id: str,
    provider_id: str,
    db: AsyncSession = Depends(get_database),
):
    """Disable scanning for a creator until re-enabled."""
    state = await _get_state_or_404(db, creator_id, provider_id)
    await enrollment.disable(db, state, DisabledReason.MANUAL)
    await db.commit()
    return ScanStateResponse.model_validate(state)


@router.delete("/states/{creator_id}/{provider_id}", status_code=204)
async def unenroll_creator(
    creator_id: str,
    provider_id: str,
    db: AsyncSession = Depends(get_database),
):
    """Remove a creator's scan state. Detections and alerts are kept."""
    if not await enrollment.unenroll(db, creator_id, provider_id):
        raise HTTPException(status_code=404, detail="Scan state not found")
    await db.commit()


@router.post("/run", response_model=ScanCycleResponse)
async def trigger_scan_cycle(runner: TaskRunner = Depends(get_runner)):
    """Run one scan cycle now and return its summary."""
    logger.info("Manual scan cycle triggered")
    summary = await runner.scan_cycle()
    return ScanCycleResponse(**summary.__dict__)


@router.post("/alerts/run", response_model=AlertCycleResponse)
async def trigger_alert_cycle(runner: TaskRunner = Depends(get_runner)):
    """Queue due reminders and deliver pending alerts now."""
    logger.info("Manual alert cycle triggered")
    reminders = await runner.dispatcher.enqueue_reminders()
    summary = await runner.dispatcher.run_alert_cycle()
    return AlertCycleResponse(reminders_enqueued=reminders, **summary.__dict__)
