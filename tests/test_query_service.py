"""Visibility-filtered listing, minimal listing and visible counts."""

import pytest
import pytest_asyncio
from sqlalchemy import update

from app.core.errors import InputValidationError, UserNotFoundError
from app.db.models import (
    ContentRestriction, Performer, Scene, SceneInheritedTag, ScenePerformer, SceneTag, Studio, Tag,
    TagParent, UserEntityStats,
)
from app.services import library_query
from tests.helpers import make_scenes


@pytest_asyncio.fixture
async def library(seed, service, users):
    """Six scenes for user 1, one of them restricted; user 2 has no exclusions."""
    await seed(
        Tag(id="t_root", name="Outdoor"),
        Tag(id="t_child", name="Beach"),
        Tag(id="t_leaf", name="Sunset"),
        TagParent(tag_id="t_child", parent_id="t_root"),
        TagParent(tag_id="t_leaf", parent_id="t_child"),
        Performer(id="p1", name="Ava"),
        Performer(id="p2", name="Bea"),
        Studio(id="st1", name="Coastline"),
        Scene(id="s000", title="Beach Day", studio_id="st1", rating100=90, favorite=True),
        Scene(id="s001", title="Dunes", rating100=50),
        Scene(id="s002", title="Evening", rating100=20),
        Scene(id="s003", title="Harbour"),
        Scene(id="s004", title="100% Fun_Times", rating100=70),
        Scene(id="s005", title="Restricted", rating100=100),
        SceneTag(scene_id="s000", tag_id="t_root"),
        SceneTag(scene_id="s001", tag_id="t_child"),
        SceneTag(scene_id="s002", tag_id="t_leaf"),
        SceneInheritedTag(scene_id="s003", tag_id="t_leaf"),
        ScenePerformer(scene_id="s000", performer_id="p1"),
        ScenePerformer(scene_id="s001", performer_id="p2"),
        ScenePerformer(scene_id="s003", performer_id="p1"),
        ScenePerformer(scene_id="s003", performer_id="p2"),
        ScenePerformer(scene_id="s004", performer_id="p2"),
        ContentRestriction(user_id=1, entity_type="scene", mode="exclude", entity_ids=["s005"]),
    )
    await service.recompute_for_user(1)


async def scene_ids(session_factory, user_id=1, **options) -> set[str]:
    async with session_factory() as db:
        result = await library_query.find_scenes(db, user_id, per_page=100, **options)
    return {item["id"] for item in result["items"]}


async def test_pages_cover_every_visible_scene_once(service, seed, session_factory, users):
    scenes = make_scenes(30)
    excluded = [s.id for s in scenes[::6]]
    await seed(scenes, ContentRestriction(user_id=1, entity_type="scenes", mode="exclude", entity_ids=excluded))
    await service.recompute_for_user(1)

    seen = []
    async with session_factory() as db:
        for page in (1, 2, 3, 4):
            result = await library_query.find_scenes(db, 1, page=page, per_page=10)
            assert result["total"] == 25
            seen.append([item["id"] for item in result["items"]])

    assert [len(ids) for ids in seen] == [10, 10, 5, 0]
    flat = [i for ids in seen for i in ids]
    assert len(flat) == len(set(flat))
    assert set(flat) == {s.id for s in scenes} - set(excluded)
    # default sort is created_at ascending
    assert flat == sorted(flat)


async def test_excluded_scene_is_hidden_from_one_user_only(library, session_factory):
    assert "s005" not in await scene_ids(session_factory, 1)
    assert "s005" in await scene_ids(session_factory, 2)


@pytest.mark.parametrize("criterion, expected", [
    ({"value": ["t_root"]}, {"s000"}),
    ({"value": ["t_root"], "depth": 1}, {"s000", "s001"}),
    ({"value": ["t_root"], "depth": -1}, {"s000", "s001", "s002", "s003"}),
    ({"value": ["t_leaf"]}, {"s002", "s003"}),
    ({"value": ["t_leaf"], "modifier": "EXCLUDES"}, {"s000", "s001", "s004"}),
])
async def test_tag_filter(library, session_factory, criterion, expected):
    assert await scene_ids(session_factory, filters={"tags": criterion}) == expected


@pytest.mark.parametrize("filters, expected", [
    ({"performers": {"value": ["p1"], "modifier": "EXCLUDES"}}, {"s001", "s002", "s004"}),
    ({"performers": {"value": ["p1", "p2"], "modifier": "INCLUDES_ALL"}}, {"s003"}),
    ({"rating100": {"value": 50, "value2": 90, "modifier": "BETWEEN"}}, {"s000", "s001", "s004"}),
    ({"rating100": {"modifier": "IS_NULL"}}, {"s003"}),
    ({"favorite": True}, {"s000"}),
    ({"studios": {"value": ["st1"]}}, {"s000"}),
    ({"studios": {"value": ["st1"], "modifier": "EXCLUDES"}}, {"s001", "s002", "s003", "s004"}),
    ({"ids": {"value": ["s001", "s005"]}}, {"s001"}),
])
async def test_scene_filters(library, session_factory, filters, expected):
    assert await scene_ids(session_factory, filters=filters) == expected


async def test_text_search_treats_wildcards_literally(library, session_factory):
    assert await scene_ids(session_factory, q="fun_") == {"s004"}
    assert await scene_ids(session_factory, q="%") == {"s004"}
    assert await scene_ids(session_factory, q="BEACH") == {"s000"}


async def test_sort_descending(library, session_factory):
    async with session_factory() as db:
        result = await library_query.find_scenes(
            db, 1,
            filters={"rating100": {"modifier": "NOT_NULL"}},
            sort="rating100",
            direction="desc",
        )
    assert [item["id"] for item in result["items"]] == ["s000", "s004", "s001", "s002"]
    assert result["total"] == 4


async def test_other_entity_types(library, session_factory):
    async with session_factory() as db:
        performers = await library_query.find_performers(db, 1)
        tags = await library_query.find_tags(db, 1, filters={"parents": {"value": ["t_root"], "depth": -1}})
        studios = await library_query.find_entities(db, 1, "studios")

    assert [p["name"] for p in performers["items"]] == ["Ava", "Bea"]
    assert {t["id"] for t in tags["items"]} == {"t_child", "t_leaf"}
    assert [s["id"] for s in studios["items"]] == ["st1"]


@pytest.mark.parametrize("options", [
    {"sort": "nonexistent"},
    {"direction": "SIDEWAYS"},
    {"filters": {"nonexistent": {"value": 1}}},
    {"filters": {"performers": {"value": ["p1"], "depth": 1}}},
    {"filters": {"tags": {"value": []}}},
    {"filters": {"rating100": {"value": "high"}}},
    {"filters": {"tags": {"value": ["t_root"], "modifier": "SOMETIMES"}}},
    {"filters": ["tags"]},
    {"page": 0},
    {"per_page": 501},
])
async def test_invalid_queries_are_rejected(library, session_factory, options):
    async with session_factory() as db:
        with pytest.raises(InputValidationError):
            await library_query.find_entities(db, 1, "scene", **options)


async def test_unknown_user_and_type(library, session_factory):
    async with session_factory() as db:
        with pytest.raises(UserNotFoundError):
            await library_query.find_entities(db, 99, "scene")
        with pytest.raises(InputValidationError):
            await library_query.find_entities(db, 1, "widgets")
        with pytest.raises(UserNotFoundError):
            await library_query.get_visible_count(db, 99, "scene")


async def test_minimal_listing(library, session_factory):
    async with session_factory() as db:
        items = await library_query.find_minimal(db, 1, "scene")
        limited = await library_query.find_minimal(db, 1, "scene", q="a", limit=1)

    assert {"id": "s005", "name": "Restricted"} not in items
    assert [i["name"] for i in items] == ["100% Fun_Times", "Beach Day", "Dunes", "Evening", "Harbour"]
    assert limited == [{"id": "s000", "name": "Beach Day"}]


async def test_visible_count_reads_stored_stats(library, session_factory):
    async with session_factory() as db:
        assert await library_query.get_visible_count(db, 1, "scene") == 5

        await db.execute(
            update(UserEntityStats)
            .where(UserEntityStats.user_id == 1, UserEntityStats.entity_type == "scene")
            .values(visible_count=42)
        )
        await db.commit()

        assert await library_query.get_visible_count(db, 1, "scene") == 42
        # filtered counts are always live
        assert await library_query.get_visible_count(db, 1, "scene", q="beach") == 1
        assert await library_query.get_visible_count(
            db, 1, "scene", filters={"performers": {"value": ["p2"]}}
        ) == 3


async def test_visible_count_without_stats_counts_live(library, session_factory):
    # user 2 was never recomputed
    async with session_factory() as db:
        assert await library_query.get_visible_count(db, 2, "scenes") == 6
        assert await library_query.get_visible_count(db, 2, "performer") == 2
