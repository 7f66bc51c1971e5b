"""
SQLAlchemy ORM models for the media library and the per-user exclusion store.

============================================================================
THREE GROUPS OF TABLES, THREE OWNERS
============================================================================
1. LIBRARY GRAPH (written by the external media-library sync, read-only here)
   - Scene, Performer, Studio, Tag, Group, Gallery, Image
   - Junctions: ScenePerformer, SceneTag, SceneInheritedTag, SceneGroup,
     SceneGallery, ImageGallery, ImagePerformer, ImageTag, PerformerTag,
     StudioTag, GroupTag
   - Hierarchies: TagParent (DAG), Studio.parent_id (tree), GroupParent (DAG)
   Soft-deleted rows (deleted_at set) are invisible to everyone and never
   counted.

2. RAW VISIBILITY INPUTS (written by admin/user surfaces)
   - ContentRestriction: admin include/exclude rules per user and type
   - UserHiddenEntity: entities a user chose to hide

3. EXCLUSION STORE (written ONLY by app/services/exclusion_service.py)
   - UserExcludedEntity: one row per (user, type, entity) that is NOT visible
   - UserEntityStats: visible count per (user, type), written together with
     the exclusion rows it summarizes
   - PendingRecompute: durable queue of deferred recomputes after an unhide

Query flow: library tables LEFT ANTI-JOIN user_excluded_entities → page.
============================================================================
"""

from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, Date, DateTime,
    ForeignKey, JSON, Index, BigInteger, UniqueConstraint
)
from sqlalchemy.orm import relationship

from app.core.entities import EntityType
from app.db.database import Base

# Autoincrement keys: BIGINT on PostgreSQL, INTEGER on SQLite (rowid alias)
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


# ============ Users ============

class User(Base):
    """Library user. Exclusions are always namespaced by user id."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False, unique=True)
    is_admin = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============ Library Graph (read-only) ============

class Scene(Base):
    """A video scene. Leaf entity: nothing cascades out of a scene."""

    __tablename__ = "scenes"

    id = Column(String(64), primary_key=True)
    title = Column(String(500))
    studio_id = Column(String(64), ForeignKey("studios.id", ondelete="SET NULL"))
    date = Column(Date)
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    o_counter = Column(Integer, default=0)
    play_count = Column(Integer, default=0)
    duration = Column(Float)  # seconds
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime)

    studio = relationship("Studio", back_populates="scenes")

    __table_args__ = (
        Index("idx_scenes_studio", "studio_id"),
        Index("idx_scenes_created", "created_at"),
        Index("idx_scenes_title", "title"),
    )


class Performer(Base):
    __tablename__ = "performers"

    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)
    gender = Column(String(30))
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_performers_name", "name"),
    )


class Studio(Base):
    """Studio; parent_id forms a tree (network -> label -> sub-label)."""

    __tablename__ = "studios"

    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)
    parent_id = Column(String(64), ForeignKey("studios.id", ondelete="SET NULL"))
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    parent = relationship("Studio", remote_side=[id])
    scenes = relationship("Scene", back_populates="studio")

    __table_args__ = (
        Index("idx_studios_parent", "parent_id"),
        Index("idx_studios_name", "name"),
    )


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)
    description = Column(Text)
    favorite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_tags_name", "name"),
    )


class TagParent(Base):
    """Many-to-many tag parent relationships (tags form a DAG, can have several parents)."""

    __tablename__ = "tag_parents"

    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)
    parent_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_tag_parents_parent_id", "parent_id"),
    )


class Group(Base):
    """A group (movie, series) of scenes; groups can contain sub-groups."""

    __tablename__ = "groups"

    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)
    date = Column(Date)
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_groups_name", "name"),
    )


class GroupParent(Base):
    """Containing group -> sub-group edges."""

    __tablename__ = "group_parents"

    group_id = Column(String(64), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    parent_id = Column(String(64), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_group_parents_parent_id", "parent_id"),
    )


class Gallery(Base):
    __tablename__ = "galleries"

    id = Column(String(64), primary_key=True)
    title = Column(String(500))
    studio_id = Column(String(64), ForeignKey("studios.id", ondelete="SET NULL"))
    date = Column(Date)
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_galleries_studio", "studio_id"),
    )


class Image(Base):
    """An image. Leaf entity: nothing cascades out of an image."""

    __tablename__ = "images"

    id = Column(String(64), primary_key=True)
    title = Column(String(500))
    studio_id = Column(String(64), ForeignKey("studios.id", ondelete="SET NULL"))
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    o_counter = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_images_studio", "studio_id"),
    )


# ============ Library Junctions ============

class ScenePerformer(Base):
    __tablename__ = "scene_performers"

    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    performer_id = Column(String(64), ForeignKey("performers.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_scene_performers_performer", "performer_id"),
    )


class SceneTag(Base):
    """Tags applied directly to a scene."""

    __tablename__ = "scene_tags"

    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_scene_tags_tag", "tag_id"),
    )


class SceneInheritedTag(Base):
    """Tags a scene inherits from its performers, studio and groups.

    Denormalized by the sync process; direct scene tags are not repeated here.
    """

    __tablename__ = "scene_inherited_tags"

    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_scene_inherited_tags_tag", "tag_id"),
    )


class SceneGroup(Base):
    __tablename__ = "scene_groups"

    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    group_id = Column(String(64), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    scene_index = Column(Integer)

    __table_args__ = (
        Index("idx_scene_groups_group", "group_id"),
    )


class SceneGallery(Base):
    __tablename__ = "scene_galleries"

    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    gallery_id = Column(String(64), ForeignKey("galleries.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_scene_galleries_gallery", "gallery_id"),
    )


class ImageGallery(Base):
    __tablename__ = "image_galleries"

    image_id = Column(String(64), ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    gallery_id = Column(String(64), ForeignKey("galleries.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_image_galleries_gallery", "gallery_id"),
    )


class ImagePerformer(Base):
    __tablename__ = "image_performers"

    image_id = Column(String(64), ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    performer_id = Column(String(64), ForeignKey("performers.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_image_performers_performer", "performer_id"),
    )


class ImageTag(Base):
    __tablename__ = "image_tags"

    image_id = Column(String(64), ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_image_tags_tag", "tag_id"),
    )


class PerformerTag(Base):
    __tablename__ = "performer_tags"

    performer_id = Column(String(64), ForeignKey("performers.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_performer_tags_tag", "tag_id"),
    )


class StudioTag(Base):
    __tablename__ = "studio_tags"

    studio_id = Column(String(64), ForeignKey("studios.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_studio_tags_tag", "tag_id"),
    )


class GroupTag(Base):
    __tablename__ = "group_tags"

    group_id = Column(String(64), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_group_tags_tag", "tag_id"),
    )


# ============ Raw Visibility Inputs ============

class ContentRestriction(Base):
    """Admin-authored restriction for one user and one entity type.

    mode="exclude": the listed entities (plus descendants up to
    hierarchy_depth) are not visible.
    mode="include": ONLY the listed entities (plus descendants) are visible.
    hierarchy_depth: 0 = exact ids, -1 = all descendants, N = N levels.
    """

    __tablename__ = "content_restrictions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(20), nullable=False)  # singular or plural type name
    mode = Column(String(10), nullable=False)  # include | exclude, any case
    entity_ids = Column(JSON, nullable=False, default=list)
    hierarchy_depth = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_content_restrictions_user", "user_id"),
    )


class UserHiddenEntity(Base):
    """An entity a user chose to hide from every view."""

    __tablename__ = "user_hidden_entities"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    hidden_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_hidden_entity"),
        Index("idx_user_hidden_entities_user_type", "user_id", "entity_type"),
    )


# ============ Exclusion Store (engine-owned) ============

class UserExcludedEntity(Base):
    """Precomputed exclusion: presence means NOT visible to the user.

    Rows are bulk-replaced on full recompute and inserted individually on the
    incremental hide path. Never edited by anything else.
    """

    __tablename__ = "user_excluded_entities"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    reason = Column(String(20), nullable=False)  # restricted | hidden | cascade | empty
    computed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_excluded_entity"),
        # Primary read pattern: anti-join per (user, type)
        Index("idx_user_excluded_user_type", "user_id", "entity_type"),
        # Reverse / cascade lookups
        Index("idx_user_excluded_type_entity", "entity_type", "entity_id"),
        Index("idx_user_excluded_user_type_reason", "user_id", "entity_type", "reason"),
    )


class UserEntityStats(Base):
    """Visible entity count per (user, type) for O(1) unfiltered counts."""

    __tablename__ = "user_entity_stats"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    visible_count = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", name="uq_user_entity_stats"),
    )


class PendingRecompute(Base):
    """Durable marker for a deferred full recompute.

    Written in the same transaction that removes a hidden entity, deleted once
    a recompute requested at or after requested_at has committed. The
    reconciliation sweep re-runs rows that outlived their background task.
    """

    __tablename__ = "pending_recomputes"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    reason = Column(String(50), nullable=False, default="unhide")
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)

    __table_args__ = (
        Index("idx_pending_recomputes_requested", "requested_at"),
    )


# ============ Entity Type Lookup ============

ENTITY_MODELS = {
    EntityType.SCENE: Scene,
    EntityType.PERFORMER: Performer,
    EntityType.STUDIO: Studio,
    EntityType.TAG: Tag,
    EntityType.GROUP: Group,
    EntityType.GALLERY: Gallery,
    EntityType.IMAGE: Image,
}

# Display name column per type (scenes, galleries and images have titles)
ENTITY_NAME_COLUMNS = {
    EntityType.SCENE: Scene.title,
    EntityType.PERFORMER: Performer.name,
    EntityType.STUDIO: Studio.name,
    EntityType.TAG: Tag.name,
    EntityType.GROUP: Group.name,
    EntityType.GALLERY: Gallery.title,
    EntityType.IMAGE: Image.title,
}
