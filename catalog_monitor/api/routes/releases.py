"""Detected release routes for the creator dashboard."""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.actions.processor import ActionProcessor, ActionResult
from catalog_monitor.api.deps import get_creator_id, get_database, get_processor
from catalog_monitor.api.errors import action_http_error
from catalog_monitor.db.models import DetectedRelease
from catalog_monitor.exceptions import ActionError

router = APIRouter(prefix="/api/releases", tags=["releases"])


class DetectedReleaseResponse(BaseModel):
    id: int
    provider_id: str
    external_release_id: str
    title: str
    release_type: Optional[str]
    release_date: Optional[date]
    artwork_ref: Optional[str]
    track_count: Optional[int]
    upc: Optional[str]
    match_confidence: str
    matched_catalog_id: Optional[int]
    status: str
    dispute_notes: Optional[str]
    first_detected_at: datetime
    last_seen_at: datetime
    was_removed: bool
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True


class DisputeRequest(BaseModel):
    notes: Optional[str] = None


class ActionResponse(BaseModel):
    detected_release_id: int
    status: str
    changed: bool
    cancelled_alerts: int


def _action_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(
        detected_release_id=result.detected_release_id,
        status=result.status,
        changed=result.changed,
        cancelled_alerts=result.cancelled_alerts,
    )


@router.get("", response_model=List[DetectedReleaseResponse])
async def list_releases(
    status: Optional[str] = None,
    limit: int = 100,
    creator_id: str = Depends(get_creator_id),
    db: AsyncSession = Depends(get_database),
):
    """List the creator's detected releases, newest first."""
    query = (
        select(DetectedRelease)
        .where(DetectedRelease.creator_id == creator_id)
        .order_by(DetectedRelease.first_detected_at.desc(), DetectedRelease.id.desc())
        .limit(limit)
    )
    if status:
        query = query.where(DetectedRelease.status == status)

    result = await db.execute(query)
    return [DetectedReleaseResponse.model_validate(row) for row in result.scalars().all()]


@router.post("/{release_id}/confirm", response_model=ActionResponse)
async def confirm_release(
    release_id: int,
    creator_id: str = Depends(get_creator_id),
    processor: ActionProcessor = Depends(get_processor),
):
    """Confirm the release belongs to the creator."""
    try:
        result = await processor.confirm(release_id, creator_id)
    except ActionError as e:
        raise action_http_error(e) from e
    return _action_response(result)


@router.post("/{release_id}/dispute", response_model=ActionResponse)
async def dispute_release(
    release_id: int,
    request: Optional[DisputeRequest] = None,
    creator_id: str = Depends(get_creator_id),
    processor: ActionProcessor = Depends(get_processor),
):
    """Flag the release as not the creator's."""
    notes = request.notes if request else None
    try:
        result = await processor.dispute(release_id, creator_id, notes)
    except ActionError as e:
        raise action_http_error(e) from e
    return _action_response(result)


@router.post("/{release_id}/dismiss", response_model=ActionResponse)
async def dismiss_release(
    release_id: int,
    creator_id: str = Depends(get_creator_id),
    processor: ActionProcessor = Depends(get_processor),
):
    """Hide the release without confirming or disputing it."""
    try:
        result = await processor.dismiss(release_id, creator_id)
    except ActionError as e:
        raise action_http_error(e) from e
    return _action_response(result)
