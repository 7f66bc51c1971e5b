"""
Visibility-filtered library queries.

Every listing, count and dropdown source goes through entity_query_conditions(),
which starts from visible_clause(): the per-user NOT EXISTS against
user_excluded_entities. There is no code path that loads the unfiltered set.

Per-type behaviour lives in VARIANTS, one EntityVariant per entity type
(model, sort columns, text-search column, filter builders). Adding an entity
type means adding a variant.

Filter criteria follow one shape:
    {"value": ..., "value2": ..., "modifier": "INCLUDES", "depth": 0}
Booleans may be passed bare ({"favorite": true}).
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable, TypedDict

from sqlalchemy import and_, func, not_, or_, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.entities import EntityType, HIERARCHICAL_TYPES, parse_entity_type
from app.core.errors import InputValidationError, QueryTimeoutError, UserNotFoundError
from app.db.models import (
    ENTITY_NAME_COLUMNS, Gallery, Group, GroupTag, Image, ImageGallery, ImagePerformer,
    ImageTag, Performer, PerformerTag, Scene, SceneGallery, SceneGroup, SceneInheritedTag,
    ScenePerformer, SceneTag, Studio, StudioTag, Tag, TagParent, User, UserEntityStats,
)
from app.services.hierarchy import expand_ids
from app.services.visibility import visible_clause

logger = logging.getLogger(__name__)
settings = get_settings()

FilterBuilder = Callable[[AsyncSession, Any], Awaitable[Any]]


class FindResult(TypedDict):
    items: list[dict]
    total: int
    page: int
    per_page: int


def _escape_like(value: str) -> str:
    """Escape SQL LIKE wildcard characters in user input."""
    return value.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")


# ==================== Criterion parsing ====================

def _criterion(name: str, raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bool, int, float, str, list)):
        return {"value": raw}
    raise InputValidationError(f"Malformed criterion for {name!r}", field=name)


def _modifier(name: str, criterion: dict, allowed: tuple[str, ...], default: str) -> str:
    modifier = str(criterion.get("modifier") or default).upper()
    if modifier not in allowed:
        raise InputValidationError(
            f"Unsupported modifier {modifier!r} for {name!r}; expected one of {', '.join(allowed)}",
            field=name,
        )
    return modifier


def _id_list(name: str, value: Any) -> list[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list) or not value:
        raise InputValidationError(f"{name!r} needs a non-empty list of ids", field=name)
    ids = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise InputValidationError(f"{name!r} ids must be strings", field=name)
        ids.append(str(item))
    return ids


def _number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InputValidationError(f"{name!r} needs a numeric value", field=name)
    return value


def _parse_date(name: str, value: Any) -> datetime:
    if not isinstance(value, str):
        raise InputValidationError(f"{name!r} needs an ISO date", field=name)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise InputValidationError(f"{name!r} is not an ISO date: {value!r}", field=name) from None


# ==================== Shared filter builders ====================

async def ids_filter(column, name: str, db: AsyncSession, raw: Any):
    criterion = _criterion(name, raw)
    modifier = _modifier(name, criterion, ("INCLUDES", "EXCLUDES"), "INCLUDES")
    ids = _id_list(name, criterion.get("value"))
    return column.in_(ids) if modifier == "INCLUDES" else column.notin_(ids)


async def bool_filter(column, name: str, db: AsyncSession, raw: Any):
    value = _criterion(name, raw).get("value")
    if not isinstance(value, bool):
        raise InputValidationError(f"{name!r} needs true or false", field=name)
    return column.is_(True) if value else or_(column.is_(False), column.is_(None))


async def number_filter(column, name: str, db: AsyncSession, raw: Any):
    criterion = _criterion(name, raw)
    modifier = _modifier(
        name, criterion,
        ("EQUALS", "NOT_EQUALS", "GREATER_THAN", "LESS_THAN", "BETWEEN", "NOT_BETWEEN", "IS_NULL", "NOT_NULL"),
        "EQUALS",
    )
    if modifier == "IS_NULL":
        return column.is_(None)
    if modifier == "NOT_NULL":
        return column.isnot(None)

    value = _number(name, criterion.get("value"))
    if modifier == "EQUALS":
        return column == value
    if modifier == "NOT_EQUALS":
        return or_(column != value, column.is_(None))
    if modifier == "GREATER_THAN":
        return column > value
    if modifier == "LESS_THAN":
        return column < value

    value2 = _number(name, criterion.get("value2"))
    low, high = min(value, value2), max(value, value2)
    if modifier == "BETWEEN":
        return column.between(low, high)
    return or_(column < low, column > high, column.is_(None))


async def date_filter(column, name: str, db: AsyncSession, raw: Any):
    criterion = _criterion(name, raw)
    modifier = _modifier(
        name, criterion,
        ("EQUALS", "GREATER_THAN", "LESS_THAN", "BETWEEN", "IS_NULL", "NOT_NULL"),
        "EQUALS",
    )
    if modifier == "IS_NULL":
        return column.is_(None)
    if modifier == "NOT_NULL":
        return column.isnot(None)

    is_date_column = column.type.python_type is date
    value = _parse_date(name, criterion.get("value"))

    def bound(dt: datetime):
        return dt.date() if is_date_column else dt

    if modifier == "EQUALS":
        day = datetime(value.year, value.month, value.day)
        if is_date_column:
            return column == day.date()
        return and_(column >= day, column < day + timedelta(days=1))
    if modifier == "GREATER_THAN":
        return column > bound(value)
    if modifier == "LESS_THAN":
        return column < bound(value)

    value2 = _parse_date(name, criterion.get("value2"))
    low, high = min(value, value2), max(value, value2)
    return column.between(bound(low), bound(high))


@dataclass(frozen=True)
class Link:
    """How an owning entity reaches a related entity id (junction row or FK column)."""

    owner_column: Any
    target_column: Any


async def relation_filter(
    owner_id, links: tuple[Link, ...], target_type: EntityType, name: str, db: AsyncSession, raw: Any
):
    """INCLUDES / INCLUDES_ALL / EXCLUDES over one or more link tables.

    For hierarchical targets, depth expands each id to its descendants
    (0 exact, -1 all, N levels).
    """
    criterion = _criterion(name, raw)
    modifier = _modifier(name, criterion, ("INCLUDES", "INCLUDES_ALL", "EXCLUDES"), "INCLUDES")
    ids = _id_list(name, criterion.get("value"))
    depth = criterion.get("depth", 0)
    if isinstance(depth, bool) or not isinstance(depth, int) or depth < -1:
        raise InputValidationError(f"{name!r} depth must be -1, 0 or a positive integer", field=name)
    if depth and target_type not in HIERARCHICAL_TYPES:
        raise InputValidationError(f"{name!r} does not support depth", field=name)

    def via(link: Link, target_ids: list[str]):
        if link.owner_column is owner_id:
            # FK on the owner row itself (scenes.studio_id); NULL never matches
            return and_(link.target_column.isnot(None), link.target_column.in_(target_ids))
        return owner_id.in_(select(link.owner_column).where(link.target_column.in_(target_ids)))

    def linked_to(target_ids):
        target_ids = sorted(target_ids)
        return or_(*(via(link, target_ids) for link in links))

    if modifier == "INCLUDES_ALL":
        groups = [await expand_ids(db, target_type, [i], depth) for i in ids]
        return and_(*(linked_to(group) for group in groups))

    expanded = await expand_ids(db, target_type, ids, depth)
    clause = linked_to(expanded)
    return clause if modifier == "INCLUDES" else not_(clause)


# ==================== Variants ====================

@dataclass(frozen=True)
class EntityVariant:
    entity_type: EntityType
    model: Any
    columns: tuple
    default_sort: str
    sort_columns: dict[str, Any]
    filters: dict[str, FilterBuilder] = field(default_factory=dict)

    @property
    def name_column(self):
        return ENTITY_NAME_COLUMNS[self.entity_type]


def _common_filters(model, **extra) -> dict[str, FilterBuilder]:
    builders = {
        "ids": partial(ids_filter, model.id, "ids"),
        "favorite": partial(bool_filter, model.favorite, "favorite"),
        "created_at": partial(date_filter, model.created_at, "created_at"),
    }
    if hasattr(model, "rating100"):
        builders["rating100"] = partial(number_filter, model.rating100, "rating100")
    builders.update(extra)
    return builders


def _relation(owner_id, target_type: EntityType, name: str, *links: Link) -> FilterBuilder:
    return partial(relation_filter, owner_id, links, target_type, name)


VARIANTS: dict[EntityType, EntityVariant] = {
    EntityType.SCENE: EntityVariant(
        entity_type=EntityType.SCENE,
        model=Scene,
        columns=(
            Scene.id, Scene.title, Scene.studio_id, Scene.date, Scene.rating100, Scene.favorite,
            Scene.o_counter, Scene.play_count, Scene.duration, Scene.created_at,
        ),
        default_sort="created_at",
        sort_columns={
            "title": Scene.title, "date": Scene.date, "rating100": Scene.rating100,
            "o_counter": Scene.o_counter, "play_count": Scene.play_count, "duration": Scene.duration,
            "created_at": Scene.created_at, "updated_at": Scene.updated_at,
        },
        filters=_common_filters(
            Scene,
            date=partial(date_filter, Scene.date, "date"),
            o_counter=partial(number_filter, Scene.o_counter, "o_counter"),
            play_count=partial(number_filter, Scene.play_count, "play_count"),
            duration=partial(number_filter, Scene.duration, "duration"),
            performers=_relation(Scene.id, EntityType.PERFORMER, "performers",
                                 Link(ScenePerformer.scene_id, ScenePerformer.performer_id)),
            tags=_relation(Scene.id, EntityType.TAG, "tags",
                           Link(SceneTag.scene_id, SceneTag.tag_id),
                           Link(SceneInheritedTag.scene_id, SceneInheritedTag.tag_id)),
            studios=_relation(Scene.id, EntityType.STUDIO, "studios", Link(Scene.id, Scene.studio_id)),
            groups=_relation(Scene.id, EntityType.GROUP, "groups", Link(SceneGroup.scene_id, SceneGroup.group_id)),
            galleries=_relation(Scene.id, EntityType.GALLERY, "galleries",
                                Link(SceneGallery.scene_id, SceneGallery.gallery_id)),
        ),
    ),
    EntityType.PERFORMER: EntityVariant(
        entity_type=EntityType.PERFORMER,
        model=Performer,
        columns=(
            Performer.id, Performer.name, Performer.gender, Performer.rating100,
            Performer.favorite, Performer.created_at,
        ),
        default_sort="name",
        sort_columns={"name": Performer.name, "rating100": Performer.rating100, "created_at": Performer.created_at},
        filters=_common_filters(
            Performer,
            tags=_relation(Performer.id, EntityType.TAG, "tags", Link(PerformerTag.performer_id, PerformerTag.tag_id)),
        ),
    ),
    EntityType.STUDIO: EntityVariant(
        entity_type=EntityType.STUDIO,
        model=Studio,
        columns=(Studio.id, Studio.name, Studio.parent_id, Studio.rating100, Studio.favorite, Studio.created_at),
        default_sort="name",
        sort_columns={"name": Studio.name, "rating100": Studio.rating100, "created_at": Studio.created_at},
        filters=_common_filters(
            Studio,
            tags=_relation(Studio.id, EntityType.TAG, "tags", Link(StudioTag.studio_id, StudioTag.tag_id)),
            parents=_relation(Studio.id, EntityType.STUDIO, "parents", Link(Studio.id, Studio.parent_id)),
        ),
    ),
    EntityType.TAG: EntityVariant(
        entity_type=EntityType.TAG,
        model=Tag,
        columns=(Tag.id, Tag.name, Tag.description, Tag.favorite, Tag.created_at),
        default_sort="name",
        sort_columns={"name": Tag.name, "created_at": Tag.created_at},
        filters=_common_filters(
            Tag,
            parents=_relation(Tag.id, EntityType.TAG, "parents", Link(TagParent.tag_id, TagParent.parent_id)),
        ),
    ),
    EntityType.GROUP: EntityVariant(
        entity_type=EntityType.GROUP,
        model=Group,
        columns=(Group.id, Group.name, Group.date, Group.rating100, Group.favorite, Group.created_at),
        default_sort="name",
        sort_columns={"name": Group.name, "date": Group.date, "rating100": Group.rating100, "created_at": Group.created_at},
        filters=_common_filters(
            Group,
            date=partial(date_filter, Group.date, "date"),
            tags=_relation(Group.id, EntityType.TAG, "tags", Link(GroupTag.group_id, GroupTag.tag_id)),
        ),
    ),
    EntityType.GALLERY: EntityVariant(
        entity_type=EntityType.GALLERY,
        model=Gallery,
        columns=(
            Gallery.id, Gallery.title, Gallery.studio_id, Gallery.date, Gallery.rating100,
            Gallery.favorite, Gallery.created_at,
        ),
        default_sort="created_at",
        sort_columns={"title": Gallery.title, "date": Gallery.date, "rating100": Gallery.rating100, "created_at": Gallery.created_at},
        filters=_common_filters(
            Gallery,
            date=partial(date_filter, Gallery.date, "date"),
            studios=_relation(Gallery.id, EntityType.STUDIO, "studios", Link(Gallery.id, Gallery.studio_id)),
            scenes=_relation(Gallery.id, EntityType.SCENE, "scenes", Link(SceneGallery.gallery_id, SceneGallery.scene_id)),
        ),
    ),
    EntityType.IMAGE: EntityVariant(
        entity_type=EntityType.IMAGE,
        model=Image,
        columns=(
            Image.id, Image.title, Image.studio_id, Image.rating100, Image.favorite,
            Image.o_counter, Image.created_at,
        ),
        default_sort="created_at",
        sort_columns={"title": Image.title, "rating100": Image.rating100, "o_counter": Image.o_counter, "created_at": Image.created_at},
        filters=_common_filters(
            Image,
            o_counter=partial(number_filter, Image.o_counter, "o_counter"),
            performers=_relation(Image.id, EntityType.PERFORMER, "performers",
                                 Link(ImagePerformer.image_id, ImagePerformer.performer_id)),
            tags=_relation(Image.id, EntityType.TAG, "tags", Link(ImageTag.image_id, ImageTag.tag_id)),
            studios=_relation(Image.id, EntityType.STUDIO, "studios", Link(Image.id, Image.studio_id)),
            galleries=_relation(Image.id, EntityType.GALLERY, "galleries",
                                Link(ImageGallery.image_id, ImageGallery.gallery_id)),
        ),
    ),
}


# ==================== Query building ====================

async def _ensure_user(db: AsyncSession, user_id: int) -> None:
    result = await db.execute(select(User.id).where(User.id == user_id))
    if result.scalar_one_or_none() is None:
        raise UserNotFoundError(user_id)


async def entity_query_conditions(
    db: AsyncSession,
    user_id: int,
    variant: EntityVariant,
    filters: dict | None = None,
    q: str | None = None,
) -> list:
    """WHERE conditions for one user's visible rows of a type, plus ad hoc filters."""
    if filters is not None and not isinstance(filters, dict):
        raise InputValidationError("filters must be an object", field="filters")

    conditions = [visible_clause(user_id, variant.entity_type, variant.model)]
    for name, raw in (filters or {}).items():
        builder = variant.filters.get(name)
        if builder is None:
            raise InputValidationError(
                f"Unknown filter {name!r} for {variant.entity_type.value}",
                field="filters",
            )
        conditions.append(await builder(db, raw))

    if q:
        conditions.append(variant.name_column.ilike(f"%{_escape_like(q.strip())}%", escape="\\"))
    return conditions


def _order_by(variant: EntityVariant, sort: str | None, direction: str | None) -> list:
    sort = sort or variant.default_sort
    column = variant.sort_columns.get(sort)
    if column is None:
        raise InputValidationError(
            f"Unknown sort {sort!r} for {variant.entity_type.value}; "
            f"expected one of {', '.join(sorted(variant.sort_columns))}",
            field="sort",
        )
    direction = (direction or "ASC").upper()
    if direction not in ("ASC", "DESC"):
        raise InputValidationError(f"Direction must be ASC or DESC, got {direction!r}", field="direction")
    if direction == "DESC":
        return [column.desc(), variant.model.id.desc()]
    return [column.asc(), variant.model.id.asc()]


def _paging(page: int, per_page: int | None) -> tuple[int, int]:
    per_page = settings.default_page_size if per_page is None else per_page
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InputValidationError("page must be a positive integer", field="page")
    if isinstance(per_page, bool) or not isinstance(per_page, int) or not 1 <= per_page <= settings.max_page_size:
        raise InputValidationError(
            f"per_page must be between 1 and {settings.max_page_size}", field="per_page"
        )
    return page, per_page


def _read_failure(e: Exception) -> QueryTimeoutError:
    logger.warning(f"Library query failed: {type(e).__name__}: {e}")
    return QueryTimeoutError(f"Query failed, retry later: {type(e).__name__}")


# ==================== Public operations ====================

async def find_entities(
    db: AsyncSession,
    user_id: int,
    entity_type: "EntityType | str",
    filters: dict | None = None,
    sort: str | None = None,
    direction: str | None = None,
    page: int = 1,
    per_page: int | None = None,
    q: str | None = None,
) -> FindResult:
    """One page of the user's visible entities plus the total matching count.

    The count and the page run in the same session, so with the read
    session's isolation level they describe the same exclusion state.
    """
    variant = VARIANTS[parse_entity_type(entity_type)]
    page, per_page = _paging(page, per_page)
    order_by = _order_by(variant, sort, direction)

    try:
        await _ensure_user(db, user_id)
        conditions = await entity_query_conditions(db, user_id, variant, filters, q)

        total_result = await db.execute(
            select(func.count()).select_from(variant.model).where(*conditions)
        )
        total = total_result.scalar_one()

        rows = await db.execute(
            select(*variant.columns)
            .where(*conditions)
            .order_by(*order_by)
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        items = [dict(row._mapping) for row in rows.all()]
    except (sa_exc.OperationalError, sa_exc.TimeoutError) as e:
        raise _read_failure(e) from e

    return {"items": items, "total": total, "page": page, "per_page": per_page}


async def find_minimal(
    db: AsyncSession,
    user_id: int,
    entity_type: "EntityType | str",
    filters: dict | None = None,
    q: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """{id, name} rows for dropdowns, through the same visibility predicate."""
    variant = VARIANTS[parse_entity_type(entity_type)]
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise InputValidationError("limit must be a positive integer", field="limit")

    try:
        await _ensure_user(db, user_id)
        conditions = await entity_query_conditions(db, user_id, variant, filters, q)
        query = (
            select(variant.model.id, variant.name_column.label("name"))
            .where(*conditions)
            .order_by(variant.name_column.asc(), variant.model.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await db.execute(query)
    except (sa_exc.OperationalError, sa_exc.TimeoutError) as e:
        raise _read_failure(e) from e

    return [{"id": entity_id, "name": name} for entity_id, name in result.all()]


async def get_visible_count(
    db: AsyncSession,
    user_id: int,
    entity_type: "EntityType | str",
    filters: dict | None = None,
    q: str | None = None,
) -> int:
    """Visible entity count: stored stats without filters, a live count with them.

    A user with no stats row yet (never recomputed) gets a live count.
    """
    variant = VARIANTS[parse_entity_type(entity_type)]

    try:
        await _ensure_user(db, user_id)
        if not filters and not q:
            result = await db.execute(
                select(UserEntityStats.visible_count).where(
                    UserEntityStats.user_id == user_id,
                    UserEntityStats.entity_type == variant.entity_type.value,
                )
            )
            stored = result.scalar_one_or_none()
            if stored is not None:
                return stored
            logger.debug(f"No stats row for user {user_id} {variant.entity_type.value}; counting live")

        conditions = await entity_query_conditions(db, user_id, variant, filters, q)
        result = await db.execute(select(func.count()).select_from(variant.model).where(*conditions))
        return result.scalar_one()
    except (sa_exc.OperationalError, sa_exc.TimeoutError) as e:
        raise _read_failure(e) from e


def _finder(entity_type: EntityType):
    async def find(db: AsyncSession, user_id: int, **options) -> FindResult:
        return await find_entities(db, user_id, entity_type, **options)

    find.__name__ = f"find_{entity_type.value}s" if entity_type != EntityType.GALLERY else "find_galleries"
    find.__doc__ = f"Paginated visible {entity_type.value} rows for a user."
    return find


find_scenes = _finder(EntityType.SCENE)
find_performers = _finder(EntityType.PERFORMER)
find_studios = _finder(EntityType.STUDIO)
find_tags = _finder(EntityType.TAG)
find_groups = _finder(EntityType.GROUP)
find_galleries = _finder(EntityType.GALLERY)
find_images = _finder(EntityType.IMAGE)
