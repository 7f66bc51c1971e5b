"""Admin endpoints: force recomputes, relay external triggers, inspect the exclusion store."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.tasks import TaskManager
from app.db import schemas
from app.db.database import get_db
from app.services.diagnostics import build_exclusion_report
from app.services.exclusion_service import ExclusionComputationService, get_exclusion_service
from app.services.triggers import TriggerDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])

limiter = Limiter(key_func=get_remote_address)


@router.post("/recompute/{user_id}", response_model=schemas.RecomputeResponse)
async def recompute_user(
    user_id: int,
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """Force a full recompute for one user."""
    return await service.recompute_for_user(user_id)


@router.post("/recompute-all", response_model=schemas.RecomputeAllResponse)
@limiter.limit("5/minute")
async def recompute_all(
    request: Request,
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """Force a full recompute for every user. Per-user failures are reported, not raised."""
    return await service.recompute_all_users()


@router.post("/restrictions-changed/{user_id}", response_model=schemas.RecomputeResponse)
async def restrictions_changed(
    user_id: int,
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """Called by the admin UI after it edits a user's content restrictions."""
    return await TriggerDispatcher(service).on_restriction_changed(user_id)


@router.post("/sync-completed", response_model=schemas.RecomputeAllResponse)
@limiter.limit("5/minute")
async def sync_completed(
    request: Request,
    service: ExclusionComputationService = Depends(get_exclusion_service),
):
    """Called by the library sync when it finishes."""
    return await TriggerDispatcher(service).on_sync_completed()


@router.get("/stats", response_model=schemas.ExclusionStatsResponse)
async def exclusion_stats(
    user_id: int | None = Query(default=None, description="Limit the breakdown to one user"),
    db: AsyncSession = Depends(get_db),
):
    """Exclusion-table size, per-user/type/reason counts and pending deferred recomputes."""
    report = await build_exclusion_report(db, user_id)
    return {**report, "background_tasks": TaskManager.get_instance().get_task_stats()}
