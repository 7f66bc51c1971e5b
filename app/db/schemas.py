"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ============ Library Query Schemas ============

class LibraryQueryRequest(BaseModel):
    """Filtered, sorted, paginated listing of one entity type."""
    filters: dict[str, Any] = Field(default_factory=dict)
    q: str | None = None  # substring match on name/title
    sort: str | None = None
    direction: str | None = None  # ASC | DESC
    page: int = 1
    per_page: int | None = None


class LibraryPageResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int


class MinimalQueryRequest(BaseModel):
    """Dropdown source: id and name only."""
    filters: dict[str, Any] = Field(default_factory=dict)
    q: str | None = None
    limit: int | None = None


class MinimalItem(BaseModel):
    id: str
    name: str | None = None


class MinimalListResponse(BaseModel):
    items: list[MinimalItem]


class VisibleCountRequest(BaseModel):
    """Live count of visible entities matching filters."""
    filters: dict[str, Any] = Field(default_factory=dict)
    q: str | None = None


class VisibleCountResponse(BaseModel):
    entity_type: str
    count: int


# ============ Hidden Entity Schemas ============

class HideRequest(BaseModel):
    entity_type: str  # singular or plural
    entity_id: str


class HideResponse(BaseModel):
    entity_type: str
    entity_id: str
    cascaded: dict[str, int]  # rows added per cascaded entity type
    visible: dict[str, int]  # refreshed visible counts


class UnhideResponse(BaseModel):
    removed: bool
    recompute_queued: bool


class UnhideAllResponse(BaseModel):
    removed: int


class HiddenEntityItem(BaseModel):
    entity_type: str
    entity_id: str
    name: str | None = None
    hidden_at: datetime | None = None


class HiddenEntityListResponse(BaseModel):
    items: list[HiddenEntityItem]
    total: int


# ============ Exclusion Admin Schemas ============

class RecomputeResponse(BaseModel):
    user_id: int
    excluded: dict[str, int]  # rows per reason
    visible: dict[str, int]
    duration_ms: int


class RecomputeErrorItem(BaseModel):
    user_id: int
    phase: str | None = None
    error: str


class RecomputeAllResponse(BaseModel):
    success: int
    failed: int
    errors: list[RecomputeErrorItem]


class UserExclusionCounts(BaseModel):
    user_id: int
    total: int
    by_type: dict[str, dict[str, int]]


class PendingRecomputeItem(BaseModel):
    user_id: int
    reason: str
    requested_at: datetime
    attempts: int
    last_error: str | None = None


class ExclusionStatsResponse(BaseModel):
    total_rows: int
    users: list[UserExclusionCounts]
    visible_counts: dict[int, dict[str, int]]
    pending_recomputes: list[PendingRecomputeItem]
    background_tasks: dict[str, Any] | None = None
