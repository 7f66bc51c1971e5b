"""Hide / unhide endpoints for the calling user."""

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.auth import current_user_id
from app.db import schemas
from app.services.exclusion_service import ExclusionComputationService, get_exclusion_service
from app.services.triggers import TriggerDispatcher

router = APIRouter()

limiter = Limiter(key_func=get_remote_address)


@router.post("", response_model=schemas.HideResponse)
@limiter.limit("60/minute")
async def hide_entity(
    request: Request,
    body: schemas.HideRequest,
    user_id: int = Depends(current_user_id),
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """
    Hide an entity. The entity and everything it cascades to are excluded
    before this returns.
    """
    return await TriggerDispatcher(service).on_entity_hidden(user_id, body.entity_type, body.entity_id)


@router.delete("", response_model=schemas.UnhideResponse)
@limiter.limit("60/minute")
async def unhide_entity(
    request: Request,
    entity_type: str = Query(..., description="Entity type (singular or plural)"),
    entity_id: str = Query(..., description="Entity ID"),
    user_id: int = Depends(current_user_id),
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """
    Unhide an entity.

    Returns as soon as the hide is removed. The entity may stay excluded
    until the queued recompute finishes, or for good if something else
    still excludes it.
    """
    removed = await TriggerDispatcher(service).on_entity_unhidden(user_id, entity_type, entity_id)
    return {"removed": removed, "recompute_queued": removed}


@router.delete("/all", response_model=schemas.UnhideAllResponse)
@limiter.limit("10/minute")
async def unhide_all(
    request: Request,
    entity_type: str | None = Query(default=None, description="Only unhide this type"),
    user_id: int = Depends(current_user_id),
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """Unhide everything (or one type) and recompute before returning."""
    removed = await service.unhide_all(user_id, entity_type)
    return {"removed": removed}


@router.get("", response_model=schemas.HiddenEntityListResponse)
async def list_hidden(
    entity_type: str | None = Query(default=None),
    user_id: int = Depends(current_user_id),
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """The caller's hidden entities, newest first."""
    items = await service.list_hidden_entities(user_id, entity_type)
    return {"items": items, "total": len(items)}
