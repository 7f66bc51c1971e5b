"""Library listing endpoints, always filtered by the caller's exclusion set."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import current_user_id
from app.core.entities import parse_entity_type
from app.db import schemas
from app.db.database import get_read_db
from app.services import library_query

router = APIRouter()


@router.post("/{entity_type}", response_model=schemas.LibraryPageResponse)
async def find_entities(
    entity_type: str,
    body: schemas.LibraryQueryRequest,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_read_db),
):
    """
    One page of visible entities of a type.

    entity_type accepts singular or plural names (scene / scenes).
    Filters use {"value", "value2", "modifier", "depth"} criteria.
    """
    return await library_query.find_entities(
        db,
        user_id,
        entity_type,
        filters=body.filters,
        sort=body.sort,
        direction=body.direction,
        page=body.page,
        per_page=body.per_page,
        q=body.q,
    )


@router.post("/{entity_type}/minimal", response_model=schemas.MinimalListResponse)
async def find_minimal(
    entity_type: str,
    body: schemas.MinimalQueryRequest,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_read_db),
):
    """Id and name of every visible entity of a type, ordered by name."""
    items = await library_query.find_minimal(
        db, user_id, entity_type, filters=body.filters, q=body.q, limit=body.limit
    )
    return {"items": items}


@router.get("/{entity_type}/count", response_model=schemas.VisibleCountResponse)
async def get_visible_count(
    entity_type: str,
    q: str | None = Query(default=None, description="Substring match on name/title"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_read_db),
):
    """Visible entity count for the caller (stored stats unless q is given)."""
    count = await library_query.get_visible_count(db, user_id, entity_type, q=q)
    return {"entity_type": parse_entity_type(entity_type).value, "count": count}


@router.post("/{entity_type}/count", response_model=schemas.VisibleCountResponse)
async def count_filtered(
    entity_type: str,
    body: schemas.VisibleCountRequest,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_read_db),
):
    """Visible entity count under the same filters as the listing endpoint."""
    count = await library_query.get_visible_count(
        db, user_id, entity_type, filters=body.filters, q=body.q
    )
    return {"entity_type": parse_entity_type(entity_type).value, "count": count}
