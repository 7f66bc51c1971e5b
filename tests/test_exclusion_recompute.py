"""Full recompute: direct, cascade and empty phases, stats, rollback and per-user isolation."""

from datetime import datetime

import pytest

from app.core.entities import EntityType
from app.core.errors import ComputationFailure, InputValidationError, UserNotFoundError
from app.db.models import (
    ContentRestriction, Gallery, Image, ImageGallery, Performer, PerformerTag, Scene,
    ScenePerformer, SceneTag, Studio, Tag, TagParent, UserHiddenEntity,
)
from tests.helpers import (
    assert_stats_consistent, excluded_ids, excluded_rows, make_scenes, stored_visible,
)


def restriction(user_id, entity_type, ids, mode="exclude", depth=0):
    return ContentRestriction(
        user_id=user_id, entity_type=entity_type, mode=mode, entity_ids=ids, hierarchy_depth=depth,
    )


def hidden(user_id, entity_type, entity_id):
    return UserHiddenEntity(user_id=user_id, entity_type=entity_type, entity_id=entity_id)


async def test_excluded_tag_cascades_to_its_scenes(service, seed, session_factory, users):
    scenes = make_scenes(100)
    await seed(
        Tag(id="t1", name="Excluded"),
        Tag(id="t2", name="Overlap"),
        scenes,
        [SceneTag(scene_id=s.id, tag_id="t1") for s in scenes[:10]],
        [SceneTag(scene_id=s.id, tag_id="t2") for s in scenes[:3]],
        restriction(1, "tags", ["t1"]),
    )

    result = await service.recompute_for_user(1)

    assert result["visible"]["scene"] == 90
    assert await excluded_ids(session_factory, 1, EntityType.SCENE) == {s.id for s in scenes[:10]}
    rows = await excluded_rows(session_factory, 1, EntityType.TAG)
    # t2 only tags excluded scenes, so it has nothing visible left
    assert rows == {("tag", "t1", "restricted"), ("tag", "t2", "empty")}
    assert result["excluded"] == {"restricted": 1, "cascade": 10, "empty": 1}
    assert (await stored_visible(session_factory, 1))["scene"] == 90
    await assert_stats_consistent(session_factory, 1)

    # other users are untouched
    assert await excluded_rows(session_factory, 2) == set()


async def test_recompute_is_idempotent(service, seed, session_factory, users):
    await seed(
        Performer(id="p1", name="Ava"),
        make_scenes(12),
        ScenePerformer(scene_id="s003", performer_id="p1"),
        restriction(1, "scene", [f"s{i:03d}" for i in range(10)]),  # more ids than one insert batch
        hidden(1, "performer", "p1"),
    )

    first = await service.recompute_for_user(1)
    rows = await excluded_rows(session_factory, 1)
    second = await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == rows
    assert first["visible"] == second["visible"]
    assert first["excluded"] == second["excluded"]
    assert second["visible"]["scene"] == 2
    await assert_stats_consistent(session_factory, 1)


async def test_restricted_wins_over_hidden_and_cascade(service, seed, session_factory, users):
    await seed(
        Performer(id="p1", name="Ava"),
        Scene(id="s1", title="One"),
        ScenePerformer(scene_id="s1", performer_id="p1"),
        restriction(1, "scene", ["s1"]),
        hidden(1, "scene", "s1"),
        hidden(1, "performer", "p1"),
    )

    await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == {
        ("scene", "s1", "restricted"),
        ("performer", "p1", "hidden"),
    }


async def test_include_mode_keeps_listed_studios_and_their_children(service, seed, session_factory, users):
    await seed(
        Studio(id="st1", name="Network"),
        Studio(id="st2", name="Label", parent_id="st1"),
        Studio(id="st3", name="Other"),
        Scene(id="s1", title="Label scene", studio_id="st2"),
        Scene(id="s2", title="Other scene", studio_id="st3"),
        restriction(1, "studios", ["st1"], mode="include", depth=-1),
    )

    await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == {
        ("studio", "st3", "restricted"),
        ("scene", "s2", "cascade"),
    }
    # st1 has no scenes of its own but its child does, so it is not empty
    assert (await stored_visible(session_factory, 1))["studio"] == 2
    await assert_stats_consistent(session_factory, 1)


async def test_include_mode_without_depth_matches_exact_ids(service, seed, session_factory, users):
    await seed(
        Studio(id="st1", name="Network"),
        Studio(id="st2", name="Label", parent_id="st1"),
        restriction(1, "studio", ["st1"], mode="include"),
    )

    await service.recompute_for_user(1)

    rows = await excluded_rows(session_factory, 1, EntityType.STUDIO)
    assert ("studio", "st2", "restricted") in rows
    assert not any(entity_id == "st1" and reason == "restricted" for _, entity_id, reason in rows)


@pytest.mark.parametrize("depth, expected", [
    (0, {"t1"}),
    (1, {"t1", "t2"}),
    (-1, {"t1", "t2", "t3"}),
])
async def test_tag_restriction_depth(service, seed, session_factory, users, depth, expected):
    await seed(
        Tag(id="t1", name="Root"),
        Tag(id="t2", name="Child"),
        Tag(id="t3", name="Grandchild"),
        TagParent(tag_id="t2", parent_id="t1"),
        TagParent(tag_id="t3", parent_id="t2"),
        restriction(1, "tag", ["t1"], depth=depth),
    )

    await service.recompute_for_user(1)

    rows = await excluded_rows(session_factory, 1, EntityType.TAG)
    assert {entity_id for _, entity_id, reason in rows if reason == "restricted"} == expected


async def test_cyclic_tag_hierarchy_terminates(service, seed, session_factory, users):
    await seed(
        Tag(id="a", name="A"),
        Tag(id="b", name="B"),
        TagParent(tag_id="b", parent_id="a"),
        TagParent(tag_id="a", parent_id="b"),
        restriction(1, "tag", ["a"], depth=-1),
    )

    await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1, EntityType.TAG) == {
        ("tag", "a", "restricted"),
        ("tag", "b", "restricted"),
    }


async def test_empty_restriction_list_is_skipped(service, seed, session_factory, users):
    await seed(make_scenes(3), restriction(1, "scene", [], mode="include"))

    result = await service.recompute_for_user(1)

    assert result["visible"]["scene"] == 3


async def test_upper_case_restriction_modes_are_accepted(service, seed, session_factory, users):
    await seed(
        Tag(id="t1", name="Excluded"),
        Studio(id="st1", name="Kept"),
        Studio(id="st2", name="Dropped"),
        make_scenes(3),
        SceneTag(scene_id="s000", tag_id="t1"),
        restriction(1, "tags", ["t1"], mode="EXCLUDE"),
        restriction(1, "studios", ["st1"], mode=" Include "),
    )

    await service.recompute_for_user(1)

    assert await excluded_ids(session_factory, 1, EntityType.TAG) == {"t1"}
    assert await excluded_ids(session_factory, 1, EntityType.SCENE) == {"s000"}
    assert ("studio", "st2", "restricted") in await excluded_rows(session_factory, 1)


async def test_unknown_restriction_mode_names_the_restriction(service, seed, session_factory, users):
    await seed(make_scenes(1), restriction(1, "scene", ["s000"], mode="sometimes"))

    with pytest.raises(ComputationFailure) as exc_info:
        await service.recompute_for_user(1)

    assert exc_info.value.phase == "direct"
    cause = exc_info.value.cause
    assert isinstance(cause, InputValidationError)
    assert cause.context["field"] == "mode"
    assert "restriction_id" in cause.context
    assert await excluded_rows(session_factory, 1) == set()


async def test_gallery_with_only_hidden_images_becomes_empty(service, seed, session_factory, users):
    await seed(
        Gallery(id="g1", title="Hidden set"),
        Gallery(id="g2", title="Visible set"),
        Image(id="i1", title="One"),
        Image(id="i2", title="Two"),
        Image(id="i3", title="Three"),
        ImageGallery(image_id="i1", gallery_id="g1"),
        ImageGallery(image_id="i2", gallery_id="g1"),
        ImageGallery(image_id="i3", gallery_id="g2"),
        hidden(1, "image", "i1"),
        hidden(1, "image", "i2"),
    )

    await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == {
        ("image", "i1", "hidden"),
        ("image", "i2", "hidden"),
        ("gallery", "g1", "empty"),
    }
    await assert_stats_consistent(session_factory, 1)


async def test_tag_used_only_by_empty_performer_is_empty(service, seed, session_factory, users):
    await seed(
        Tag(id="t1", name="Blonde"),
        Performer(id="p1", name="Ava"),
        Performer(id="p2", name="Bea"),
        PerformerTag(performer_id="p1", tag_id="t1"),
        Scene(id="s1", title="One"),
        ScenePerformer(scene_id="s1", performer_id="p1"),
        restriction(1, "scene", ["s1"]),
    )

    await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == {
        ("scene", "s1", "restricted"),
        ("performer", "p1", "empty"),
        ("performer", "p2", "empty"),
        ("tag", "t1", "empty"),
    }


async def test_deleted_entities_get_no_rows(service, seed, session_factory, users):
    gone = datetime(2024, 1, 1)
    await seed(
        Scene(id="s1", title="Live"),
        Scene(id="s2", title="Deleted", deleted_at=gone),
        Performer(id="p1", name="Deleted performer", deleted_at=gone),
        restriction(1, "scene", ["s1", "s2"]),
        hidden(1, "performer", "p1"),
    )

    result = await service.recompute_for_user(1)

    assert await excluded_rows(session_factory, 1) == {("scene", "s1", "restricted")}
    assert result["visible"]["scene"] == 0
    assert result["visible"]["performer"] == 0
    await assert_stats_consistent(session_factory, 1)


async def test_unknown_user(service, users):
    with pytest.raises(UserNotFoundError):
        await service.recompute_for_user(99)


async def test_failed_phase_rolls_back_to_previous_state(service, seed, session_factory, users, monkeypatch):
    scenes = make_scenes(5)
    await seed(
        Tag(id="t1", name="First"),
        Tag(id="t2", name="Second"),
        scenes,
        SceneTag(scene_id="s000", tag_id="t1"),
        SceneTag(scene_id="s001", tag_id="t2"),
        restriction(1, "tag", ["t1"]),
    )
    await service.recompute_for_user(1)
    rows_before = await excluded_rows(session_factory, 1)
    stats_before = await stored_visible(session_factory, 1)

    await seed(restriction(1, "tag", ["t2"]))
    original = service._apply_cascade_exclusions

    async def cascade_then_fail(db, user_id):
        await original(db, user_id)
        raise RuntimeError("disk full")

    monkeypatch.setattr(service, "_apply_cascade_exclusions", cascade_then_fail)

    with pytest.raises(ComputationFailure) as exc_info:
        await service.recompute_for_user(1)

    assert exc_info.value.phase == "cascade"
    assert exc_info.value.user_id == 1
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert await excluded_rows(session_factory, 1) == rows_before
    assert await stored_visible(session_factory, 1) == stats_before


async def test_recompute_all_isolates_failing_users(service, seed, session_factory, users):
    await seed(
        make_scenes(4),
        restriction(1, "scene", ["s000"]),
        restriction(2, "bogus", ["x"]),
    )

    report = await service.recompute_all_users()

    assert report["success"] == 1
    assert report["failed"] == 1
    assert report["errors"][0]["user_id"] == 2
    assert report["errors"][0]["phase"] == "direct"
    assert await excluded_rows(session_factory, 1) == {("scene", "s000", "restricted")}
    assert (await stored_visible(session_factory, 1))["scene"] == 3
    assert await stored_visible(session_factory, 2) == {}
