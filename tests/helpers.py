"""Builders and assertions shared by the test modules."""

from datetime import datetime, timedelta

from sqlalchemy import func, select

from app.core.entities import EntityType
from app.db.models import ENTITY_MODELS, Scene, UserEntityStats, UserExcludedEntity

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def make_scenes(count: int, prefix: str = "s", start: int = 0, **fields) -> list[Scene]:
    return [
        Scene(
            id=f"{prefix}{i:03d}",
            title=f"Scene {i:03d}",
            created_at=BASE_TIME + timedelta(minutes=i),
            **fields,
        )
        for i in range(start, start + count)
    ]


async def excluded_rows(session_factory, user_id: int, entity_type: EntityType | None = None) -> set[tuple]:
    """{(entity_type, entity_id, reason)} currently stored for a user."""
    query = select(
        UserExcludedEntity.entity_type, UserExcludedEntity.entity_id, UserExcludedEntity.reason
    ).where(UserExcludedEntity.user_id == user_id)
    if entity_type is not None:
        query = query.where(UserExcludedEntity.entity_type == entity_type.value)
    async with session_factory() as db:
        result = await db.execute(query)
        return {tuple(row) for row in result.all()}


async def excluded_ids(session_factory, user_id: int, entity_type: EntityType) -> set[str]:
    return {entity_id for _, entity_id, _ in await excluded_rows(session_factory, user_id, entity_type)}


async def stored_visible(session_factory, user_id: int) -> dict[str, int]:
    async with session_factory() as db:
        result = await db.execute(
            select(UserEntityStats.entity_type, UserEntityStats.visible_count)
            .where(UserEntityStats.user_id == user_id)
        )
        return dict(result.all())


async def assert_stats_consistent(session_factory, user_id: int) -> None:
    """visible + excluded rows == live entities, for every type."""
    visible = await stored_visible(session_factory, user_id)
    async with session_factory() as db:
        for entity_type, model in ENTITY_MODELS.items():
            total = (await db.execute(
                select(func.count()).select_from(model).where(model.deleted_at.is_(None))
            )).scalar_one()
            excluded = (await db.execute(
                select(func.count()).select_from(UserExcludedEntity).where(
                    UserExcludedEntity.user_id == user_id,
                    UserExcludedEntity.entity_type == entity_type.value,
                )
            )).scalar_one()
            assert visible[entity_type.value] + excluded == total, entity_type
