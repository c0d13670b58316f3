"""Signed action link intake.

Alert links point here with ``?token=...&action=confirm|dispute``. GET is
accepted so a link works from an email or chat client; POST additionally
takes dispute notes.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from catalog_monitor.actions.processor import ActionProcessor
from catalog_monitor.api.deps import get_processor
from catalog_monitor.api.errors import action_http_error
from catalog_monitor.api.routes.releases import ActionResponse
from catalog_monitor.exceptions import ActionError

router = APIRouter(prefix="/api/actions", tags=["actions"])


class ActionNotes(BaseModel):
    notes: Optional[str] = None


async def _apply(
    processor: ActionProcessor,
    token: str,
    action: str,
    notes: Optional[str] = None,
) -> ActionResponse:
    try:
        result = await processor.action_by_token(token, action, notes)
    except ActionError as e:
        raise action_http_error(e) from e
    return ActionResponse(
        detected_release_id=result.detected_release_id,
        status=result.status,
        changed=result.changed,
        cancelled_alerts=result.cancelled_alerts,
    )


@router.get("", response_model=ActionResponse)
async def action_link(
    token: str = Query(...),
    action: str = Query(..., pattern="^(confirm|dispute)$"),
    processor: ActionProcessor = Depends(get_processor),
):
    """Apply the action from a signed alert link."""
    return await _apply(processor, token, action)


@router.post("", response_model=ActionResponse)
async def action_submit(
    token: str = Query(...),
    action: str = Query(..., pattern="^(confirm|dispute)$"),
    body: Optional[ActionNotes] = None,
    processor: ActionProcessor = Depends(get_processor),
):
    """Apply the action from a signed alert link, with optional dispute notes."""
    return await _apply(processor, token, action, body.notes if body else None)
