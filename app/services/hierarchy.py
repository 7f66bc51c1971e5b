"""Adjacency helpers for the tag, studio and group hierarchies.

Hierarchies come from an external sync and are not trusted to be acyclic,
so every traversal is iterative with a visited set.

Depth convention (restrictions and query filters):
    0   exact ids only
    -1  all descendants
    N   descendants up to N levels below each id
"""

import logging
from collections import defaultdict, deque
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.entities import EntityType
from app.db.models import GroupParent, Group, Studio, Tag, TagParent

logger = logging.getLogger(__name__)

ChildMap = dict[str, list[str]]


async def load_child_map(db: AsyncSession, entity_type: EntityType) -> ChildMap:
    """Load parent -> children edges for a hierarchical type.

    Edges whose child is soft-deleted are skipped. Non-hierarchical types get
    an empty map.
    """
    if entity_type == EntityType.TAG:
        query = (
            select(TagParent.parent_id, TagParent.tag_id)
            .join(Tag, Tag.id == TagParent.tag_id)
            .where(Tag.deleted_at.is_(None))
        )
    elif entity_type == EntityType.STUDIO:
        query = (
            select(Studio.parent_id, Studio.id)
            .where(Studio.parent_id.isnot(None), Studio.deleted_at.is_(None))
        )
    elif entity_type == EntityType.GROUP:
        query = (
            select(GroupParent.parent_id, GroupParent.group_id)
            .join(Group, Group.id == GroupParent.group_id)
            .where(Group.deleted_at.is_(None))
        )
    else:
        return {}

    result = await db.execute(query)
    children: ChildMap = defaultdict(list)
    for parent_id, child_id in result.all():
        children[parent_id].append(child_id)
    return dict(children)


def expand_descendants(ids: Iterable[str], child_map: ChildMap, depth: int) -> set[str]:
    """Return ids plus their descendants up to depth (-1 = unlimited)."""
    result = set(ids)
    if depth == 0 or not child_map:
        return result

    queue = deque((entity_id, 0) for entity_id in result)
    while queue:
        entity_id, level = queue.popleft()
        if depth != -1 and level >= depth:
            continue
        for child_id in child_map.get(entity_id, ()):
            if child_id not in result:
                result.add(child_id)
                queue.append((child_id, level + 1))
    return result


def invert(child_map: ChildMap) -> ChildMap:
    """Turn parent -> children into child -> parents."""
    parents: ChildMap = defaultdict(list)
    for parent_id, child_ids in child_map.items():
        for child_id in child_ids:
            parents[child_id].append(parent_id)
    return dict(parents)


def with_ancestors(seeds: Iterable[str], child_map: ChildMap) -> set[str]:
    """Return seeds plus every ancestor reachable from them.

    Used bottom-up by the empty phase: anything with visible content makes
    all of its ancestors non-empty too.
    """
    parent_map = invert(child_map)
    result = set(seeds)
    stack = list(result)
    while stack:
        entity_id = stack.pop()
        for parent_id in parent_map.get(entity_id, ()):
            if parent_id not in result:
                result.add(parent_id)
                stack.append(parent_id)
    return result


async def expand_ids(
    db: AsyncSession,
    entity_type: EntityType,
    ids: Iterable[str],
    depth: int | None,
) -> set[str]:
    """Expand ids through the type's hierarchy, loading edges only when needed."""
    id_set = {str(i) for i in ids}
    if not depth or not id_set:
        return id_set
    child_map = await load_child_map(db, entity_type)
    expanded = expand_descendants(id_set, child_map, depth)
    logger.debug(f"Expanded {len(id_set)} {entity_type.value} ids to {len(expanded)} (depth={depth})")
    return expanded
