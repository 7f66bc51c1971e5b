"""Fixed, type-directed cascade rules.

When an entity of the source type is excluded directly (restricted or hidden),
every live entity of the target type linked through the rule's link table is
excluded with reason "cascade":

    Performer -> Scenes (scene_performers)
    Studio    -> Scenes (scenes.studio_id)
    Tag       -> Scenes (scene_tags + scene_inherited_tags),
                 Performers, Studios, Groups (their *_tags tables)
    Group     -> Scenes (scene_groups)
    Gallery   -> Scenes (scene_galleries), Images (image_galleries)
    Scene, Image: leaves, nothing cascades out

Rules are applied once from the direct set, not iterated to a fixpoint.
Scenes inherit their performers', studio's and groups' tags through
scene_inherited_tags, so an excluded tag already reaches the scenes of the
performers and studios it cascades to.
"""

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.sql import Select

from app.core.entities import EntityType
from app.db.models import (
    ENTITY_MODELS, GroupTag, ImageGallery, PerformerTag, Scene, SceneGallery,
    SceneGroup, SceneInheritedTag, ScenePerformer, SceneTag, StudioTag,
)


@dataclass(frozen=True)
class CascadeRule:
    """One source -> target edge of the cascade table."""

    source: EntityType
    target: EntityType
    source_column: object  # column holding the source entity id
    target_column: object  # column holding the target entity id

    def targets(self, source_ids: "Select | Iterable[str]") -> Select:
        """Select distinct live target ids linked to source_ids.

        source_ids is either a scalar subquery or a concrete list of ids.
        The result has a single column named entity_id.
        """
        if not isinstance(source_ids, Select):
            source_ids = list(source_ids)
        target_model = ENTITY_MODELS[self.target]
        query = select(self.target_column.label("entity_id"))
        if self.target_column.class_ is not target_model:
            query = query.join(target_model, target_model.id == self.target_column)
        return (
            query
            .where(
                self.source_column.in_(source_ids),
                target_model.deleted_at.is_(None),
            )
            .distinct()
        )


CASCADE_RULES: dict[EntityType, tuple[CascadeRule, ...]] = {
    EntityType.PERFORMER: (
        CascadeRule(EntityType.PERFORMER, EntityType.SCENE, ScenePerformer.performer_id, ScenePerformer.scene_id),
    ),
    EntityType.STUDIO: (
        CascadeRule(EntityType.STUDIO, EntityType.SCENE, Scene.studio_id, Scene.id),
    ),
    EntityType.TAG: (
        CascadeRule(EntityType.TAG, EntityType.SCENE, SceneTag.tag_id, SceneTag.scene_id),
        CascadeRule(EntityType.TAG, EntityType.SCENE, SceneInheritedTag.tag_id, SceneInheritedTag.scene_id),
        CascadeRule(EntityType.TAG, EntityType.PERFORMER, PerformerTag.tag_id, PerformerTag.performer_id),
        CascadeRule(EntityType.TAG, EntityType.STUDIO, StudioTag.tag_id, StudioTag.studio_id),
        CascadeRule(EntityType.TAG, EntityType.GROUP, GroupTag.tag_id, GroupTag.group_id),
    ),
    EntityType.GROUP: (
        CascadeRule(EntityType.GROUP, EntityType.SCENE, SceneGroup.group_id, SceneGroup.scene_id),
    ),
    EntityType.GALLERY: (
        CascadeRule(EntityType.GALLERY, EntityType.SCENE, SceneGallery.gallery_id, SceneGallery.scene_id),
        CascadeRule(EntityType.GALLERY, EntityType.IMAGE, ImageGallery.gallery_id, ImageGallery.image_id),
    ),
    EntityType.SCENE: (),
    EntityType.IMAGE: (),
}


def cascade_targets(entity_type: EntityType) -> set[EntityType]:
    """Entity types that can be affected by excluding one entity of entity_type."""
    return {rule.target for rule in CASCADE_RULES[entity_type]}
