"""
Per-user exclusion computation engine.

============================================================================
FULL RECOMPUTE (recompute_for_user)
============================================================================
One transaction per user, five phases in strict order:

    clear    delete every user_excluded_entities row of the user
    direct   content_restrictions (include / exclude, hierarchy-expanded)
             and user_hidden_entities
    cascade  fixed rule table from app/services/cascade_rules.py, applied
             once from the direct rows
    empty    galleries, performers, groups, studios, tags with no visible
             content left (hierarchies evaluated bottom-up)
    stats    user_entity_stats rewritten from the final row set

Rows are written with INSERT ... SELECT guarded by NOT EXISTS, so each
(user, type, entity) is inserted once and the first phase to reach it
decides the stored reason (restricted > hidden > cascade > empty).
Any error rolls the whole transaction back; the previous exclusion set
stays in place and the caller gets ComputationFailure(user_id, phase).

============================================================================
INCREMENTAL PATHS
============================================================================
add_hidden_entity      raw row + direct row + single-source cascade + stats
                       for the affected types, one transaction, no empty phase
remove_hidden_entity   raw row deleted and a pending_recomputes marker written
                       in one transaction; the full recompute runs in the
                       background (retried, then swept by reconcile_pending)
unhide_all             same marker-then-recompute, but the recompute runs inline
============================================================================
"""

import asyncio
import logging
import time
import weakref
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Iterable, Sequence, TypedDict

from sqlalchemy import delete, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Select

from app.config import get_settings
from app.core.entities import (
    DIRECT_REASONS, EntityType, ExclusionReason, HIERARCHICAL_TYPES,
    RestrictionMode, parse_entity_type, parse_restriction_mode, stronger_reason,
)
from app.core.errors import ComputationFailure, ExclusionError, InputValidationError, UserNotFoundError
from app.core.retry import RetryConfig, retry_async
from app.core.tasks import TaskManager
from app.db.database import async_session_maker
from app.db.models import (
    ENTITY_MODELS, ENTITY_NAME_COLUMNS, ContentRestriction, GroupTag, ImageGallery,
    ImagePerformer, ImageTag, Image, PendingRecompute, PerformerTag, Scene, SceneGroup,
    ScenePerformer, SceneTag, SceneInheritedTag, StudioTag, User, UserEntityStats,
    UserExcludedEntity, UserHiddenEntity,
)
from app.services.cascade_rules import CASCADE_RULES, cascade_targets
from app.services.hierarchy import expand_ids, load_child_map, with_ancestors
from app.services.visibility import not_excluded, visible_clause

logger = logging.getLogger(__name__)

# Order matters: galleries and performers first so that tags attached only to
# now-empty performers are themselves found empty.
EMPTY_PHASE_ORDER = (
    EntityType.GALLERY,
    EntityType.PERFORMER,
    EntityType.GROUP,
    EntityType.STUDIO,
    EntityType.TAG,
)

_EXCLUSION_COLUMNS = ["user_id", "entity_type", "entity_id", "reason", "computed_at"]


class RecomputeResult(TypedDict):
    user_id: int
    excluded: dict[str, int]  # rows per reason
    visible: dict[str, int]  # visible count per entity type
    duration_ms: int


class RecomputeError(TypedDict):
    user_id: int
    phase: str | None
    error: str


class RecomputeAllReport(TypedDict):
    success: int
    failed: int
    errors: list[RecomputeError]


class HideResult(TypedDict):
    entity_type: str
    entity_id: str
    cascaded: dict[str, int]
    visible: dict[str, int]


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _insert_excluded(user_id: int, entity_type: EntityType, reason: ExclusionReason, ids: Select):
    """INSERT ... SELECT of ids not yet excluded for (user, type).

    ids must expose a single column labelled entity_id.
    """
    src = ids.subquery()
    rows = select(
        literal(user_id),
        literal(entity_type.value),
        src.c.entity_id,
        literal(reason.value),
        func.now(),
    ).where(not_excluded(user_id, entity_type, src.c.entity_id))
    return insert(UserExcludedEntity).from_select(_EXCLUSION_COLUMNS, rows)


def _non_empty_ids(user_id: int, entity_type: EntityType) -> Select:
    """Ids of entity_type that still reach at least one visible piece of content."""
    if entity_type == EntityType.GALLERY:
        return (
            select(ImageGallery.gallery_id.label("entity_id"))
            .join(Image, Image.id == ImageGallery.image_id)
            .where(visible_clause(user_id, EntityType.IMAGE, Image))
        )
    if entity_type == EntityType.PERFORMER:
        return (
            select(ScenePerformer.performer_id.label("entity_id"))
            .join(Scene, Scene.id == ScenePerformer.scene_id)
            .where(visible_clause(user_id, EntityType.SCENE, Scene))
            .union(
                select(ImagePerformer.performer_id)
                .join(Image, Image.id == ImagePerformer.image_id)
                .where(visible_clause(user_id, EntityType.IMAGE, Image))
            )
        )
    if entity_type == EntityType.GROUP:
        return (
            select(SceneGroup.group_id.label("entity_id"))
            .join(Scene, Scene.id == SceneGroup.scene_id)
            .where(visible_clause(user_id, EntityType.SCENE, Scene))
        )
    if entity_type == EntityType.STUDIO:
        return (
            select(Scene.studio_id.label("entity_id"))
            .where(Scene.studio_id.isnot(None), visible_clause(user_id, EntityType.SCENE, Scene))
            .union(
                select(Image.studio_id)
                .where(Image.studio_id.isnot(None), visible_clause(user_id, EntityType.IMAGE, Image))
            )
        )
    if entity_type == EntityType.TAG:
        parts = []
        for link_tag, link_owner, owner_type in (
            (SceneTag.tag_id, SceneTag.scene_id, EntityType.SCENE),
            (SceneInheritedTag.tag_id, SceneInheritedTag.scene_id, EntityType.SCENE),
            (ImageTag.tag_id, ImageTag.image_id, EntityType.IMAGE),
            (PerformerTag.tag_id, PerformerTag.performer_id, EntityType.PERFORMER),
            (StudioTag.tag_id, StudioTag.studio_id, EntityType.STUDIO),
            (GroupTag.tag_id, GroupTag.group_id, EntityType.GROUP),
        ):
            owner = ENTITY_MODELS[owner_type]
            parts.append(
                select(link_tag.label("entity_id"))
                .join(owner, owner.id == link_owner)
                .where(visible_clause(user_id, owner_type, owner))
            )
        return parts[0].union(*parts[1:])
    raise ValueError(f"{entity_type.value} has no empty rule")


class ExclusionComputationService:
    """Writes the exclusion store. Nothing else inserts or deletes its rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        task_manager: TaskManager | None = None,
        *,
        batch_size: int | None = None,
        concurrency: int | None = None,
        deferred_delay: float | None = None,
        stale_after: float | None = None,
        retry_config: RetryConfig | None = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._tasks = task_manager or TaskManager.get_instance()
        self._batch_size = batch_size or settings.exclusion_insert_batch_size
        self._concurrency = concurrency or settings.recompute_all_concurrency
        self._deferred_delay = (
            settings.deferred_recompute_delay_seconds if deferred_delay is None else deferred_delay
        )
        self._stale_after = settings.reconciliation_stale_seconds if stale_after is None else stale_after
        self._retry_config = retry_config or RetryConfig(
            max_attempts=settings.deferred_recompute_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    # ==================== Full recompute ====================

    async def recompute_for_user(self, user_id: int) -> RecomputeResult:
        """Rebuild the user's exclusion set and visibility stats from scratch.

        Raises UserNotFoundError for an unknown user and ComputationFailure
        (after rollback) for anything that goes wrong in a phase.
        """
        phases = (
            ("clear", self._clear_exclusions),
            ("direct", self._apply_direct_exclusions),
            ("cascade", self._apply_cascade_exclusions),
            ("empty", self._apply_empty_exclusions),
        )
        start = time.time()
        timings: dict[str, int] = {}
        phase = "clear"

        async with self._user_lock(user_id):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._lock_user(db, user_id)
                        for phase, step in phases:
                            t0 = time.time()
                            await step(db, user_id)
                            timings[phase] = int((time.time() - t0) * 1000)

                        phase = "stats"
                        t0 = time.time()
                        visible = await self._write_visibility_stats(db, user_id, list(EntityType))
                        excluded = await self._count_by_reason(db, user_id)
                        timings[phase] = int((time.time() - t0) * 1000)
            except UserNotFoundError:
                raise
            except Exception as e:
                logger.error(
                    f"Exclusion recompute failed for user {user_id} in {phase} phase: "
                    f"{type(e).__name__}: {e}"
                )
                raise ComputationFailure(user_id, phase, e) from e

        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Recomputed exclusions for user {user_id}: {sum(excluded.values())} rows "
            f"{excluded} in {duration_ms}ms (phases: {timings})"
        )
        return {
            "user_id": user_id,
            "excluded": excluded,
            "visible": {et.value: count for et, count in visible.items()},
            "duration_ms": duration_ms,
        }

    async def recompute_all_users(self) -> RecomputeAllReport:
        """Recompute every user, each in its own transaction.

        A failing user is reported and does not stop the others.
        """
        async with self._session_factory() as db:
            result = await db.execute(select(User.id).order_by(User.id))
            user_ids = list(result.scalars().all())

        logger.info(f"Recomputing exclusions for {len(user_ids)} users (concurrency={self._concurrency})")
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_one(uid: int) -> RecomputeError | None:
            async with semaphore:
                try:
                    await self.recompute_for_user(uid)
                    return None
                except ExclusionError as e:
                    return {"user_id": uid, "phase": getattr(e, "phase", None), "error": e.message}

        outcomes = await asyncio.gather(*(run_one(uid) for uid in user_ids))
        errors = [o for o in outcomes if o is not None]
        report: RecomputeAllReport = {
            "success": len(user_ids) - len(errors),
            "failed": len(errors),
            "errors": errors,
        }
        if errors:
            logger.warning(f"Recompute-all finished with {len(errors)} failures: {errors}")
        else:
            logger.info(f"Recompute-all finished for {len(user_ids)} users")
        return report

    # ==================== Phases ====================

    async def _lock_user(self, db: AsyncSession, user_id: int) -> None:
        """Row-lock the user so recomputes for one user serialize across processes."""
        result = await db.execute(select(User.id).where(User.id == user_id).with_for_update())
        if result.scalar_one_or_none() is None:
            raise UserNotFoundError(user_id)

    async def _clear_exclusions(self, db: AsyncSession, user_id: int) -> None:
        await db.execute(delete(UserExcludedEntity).where(UserExcludedEntity.user_id == user_id))

    async def _apply_direct_exclusions(self, db: AsyncSession, user_id: int) -> None:
        result = await db.execute(
            select(ContentRestriction)
            .where(ContentRestriction.user_id == user_id)
            .order_by(ContentRestriction.id)
        )
        for restriction in result.scalars().all():
            await self._apply_restriction(db, user_id, restriction)

        for entity_type in EntityType:
            model = ENTITY_MODELS[entity_type]
            hidden = (
                select(UserHiddenEntity.entity_id.label("entity_id"))
                .join(model, model.id == UserHiddenEntity.entity_id)
                .where(
                    UserHiddenEntity.user_id == user_id,
                    UserHiddenEntity.entity_type == entity_type.value,
                    model.deleted_at.is_(None),
                )
            )
            await db.execute(_insert_excluded(user_id, entity_type, ExclusionReason.HIDDEN, hidden))

    async def _apply_restriction(self, db: AsyncSession, user_id: int, restriction: ContentRestriction) -> None:
        entity_type = parse_entity_type(restriction.entity_type)
        mode = parse_restriction_mode(restriction.mode, restriction.id)
        ids = [str(i) for i in (restriction.entity_ids or [])]
        if not ids:
            logger.debug(f"Skipping restriction {restriction.id} for user {user_id}: no entity ids")
            return

        depth = restriction.hierarchy_depth or 0
        if entity_type in HIERARCHICAL_TYPES:
            expanded = await expand_ids(db, entity_type, ids, depth)
        else:
            expanded = set(ids)

        model = ENTITY_MODELS[entity_type]
        if mode == RestrictionMode.EXCLUDE:
            for chunk in _chunks(sorted(expanded), self._batch_size):
                matched = select(model.id.label("entity_id")).where(
                    model.id.in_(chunk), model.deleted_at.is_(None)
                )
                await db.execute(_insert_excluded(user_id, entity_type, ExclusionReason.RESTRICTED, matched))
        else:
            outside = select(model.id.label("entity_id")).where(
                model.id.notin_(sorted(expanded)), model.deleted_at.is_(None)
            )
            await db.execute(_insert_excluded(user_id, entity_type, ExclusionReason.RESTRICTED, outside))

    async def _apply_cascade_exclusions(self, db: AsyncSession, user_id: int) -> None:
        for source_type, rules in CASCADE_RULES.items():
            if not rules:
                continue
            sources = select(UserExcludedEntity.entity_id).where(
                UserExcludedEntity.user_id == user_id,
                UserExcludedEntity.entity_type == source_type.value,
                UserExcludedEntity.reason.in_(DIRECT_REASONS),
            )
            for rule in rules:
                await db.execute(
                    _insert_excluded(user_id, rule.target, ExclusionReason.CASCADE, rule.targets(sources))
                )

    async def _apply_empty_exclusions(self, db: AsyncSession, user_id: int) -> None:
        for entity_type in EMPTY_PHASE_ORDER:
            model = ENTITY_MODELS[entity_type]
            non_empty = _non_empty_ids(user_id, entity_type)

            if entity_type not in HIERARCHICAL_TYPES:
                non_empty_ids = non_empty.subquery()
                empty = select(model.id.label("entity_id")).where(
                    model.deleted_at.is_(None),
                    model.id.notin_(select(non_empty_ids.c.entity_id)),
                )
                await db.execute(_insert_excluded(user_id, entity_type, ExclusionReason.EMPTY, empty))
                continue

            # A parent with visible content anywhere below it is not empty
            child_map = await load_child_map(db, entity_type)
            seeds = (await db.execute(non_empty)).scalars().all()
            keep = with_ancestors(seeds, child_map)

            candidates = await db.execute(
                select(model.id).where(visible_clause(user_id, entity_type, model))
            )
            empty_ids = sorted(set(candidates.scalars().all()) - keep)
            now = datetime.utcnow()
            for chunk in _chunks(empty_ids, self._batch_size):
                await db.execute(
                    insert(UserExcludedEntity),
                    [
                        {
                            "user_id": user_id,
                            "entity_type": entity_type.value,
                            "entity_id": entity_id,
                            "reason": ExclusionReason.EMPTY.value,
                            "computed_at": now,
                        }
                        for entity_id in chunk
                    ],
                )
            if empty_ids:
                logger.debug(f"User {user_id}: {len(empty_ids)} empty {entity_type.value} entities")

    async def _write_visibility_stats(
        self, db: AsyncSession, user_id: int, entity_types: Iterable[EntityType]
    ) -> dict[EntityType, int]:
        """Rewrite user_entity_stats rows for the given types from the current exclusion rows."""
        entity_types = list(entity_types)
        await db.execute(
            delete(UserEntityStats).where(
                UserEntityStats.user_id == user_id,
                UserEntityStats.entity_type.in_([et.value for et in entity_types]),
            )
        )

        visible: dict[EntityType, int] = {}
        now = datetime.utcnow()
        for entity_type in entity_types:
            model = ENTITY_MODELS[entity_type]
            total = await db.execute(
                select(func.count()).select_from(model).where(model.deleted_at.is_(None))
            )
            excluded = await db.execute(
                select(func.count()).select_from(UserExcludedEntity).where(
                    UserExcludedEntity.user_id == user_id,
                    UserExcludedEntity.entity_type == entity_type.value,
                )
            )
            visible[entity_type] = total.scalar_one() - excluded.scalar_one()

        await db.execute(
            insert(UserEntityStats),
            [
                {"user_id": user_id, "entity_type": et.value, "visible_count": count, "updated_at": now}
                for et, count in visible.items()
            ],
        )
        return visible

    async def _count_by_reason(self, db: AsyncSession, user_id: int) -> dict[str, int]:
        result = await db.execute(
            select(UserExcludedEntity.reason, func.count())
            .where(UserExcludedEntity.user_id == user_id)
            .group_by(UserExcludedEntity.reason)
        )
        return {reason: count for reason, count in result.all()}

    # ==================== Hide / unhide ====================

    async def add_hidden_entity(self, user_id: int, entity_type: "EntityType | str", entity_id: str) -> HideResult:
        """Hide one entity for a user and apply its cascade immediately.

        Writes the raw hidden row, the direct exclusion row and the cascade
        rows from this entity only, then refreshes stats for the affected
        types. Empty entities are left to the next full recompute.
        """
        entity_type = parse_entity_type(entity_type)
        entity_id = _validate_entity_id(entity_id)
        model = ENTITY_MODELS[entity_type]
        cascaded: dict[str, int] = {}

        async with self._user_lock(user_id):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._lock_user(db, user_id)

                        existing_raw = await db.execute(
                            select(UserHiddenEntity.id).where(
                                UserHiddenEntity.user_id == user_id,
                                UserHiddenEntity.entity_type == entity_type.value,
                                UserHiddenEntity.entity_id == entity_id,
                            )
                        )
                        if existing_raw.scalar_one_or_none() is None:
                            db.add(UserHiddenEntity(
                                user_id=user_id,
                                entity_type=entity_type.value,
                                entity_id=entity_id,
                                hidden_at=datetime.utcnow(),
                            ))
                            await db.flush()

                        await self._upsert_hidden_exclusion(db, user_id, entity_type, entity_id)

                        for rule in CASCADE_RULES[entity_type]:
                            result = await db.execute(
                                _insert_excluded(
                                    user_id, rule.target, ExclusionReason.CASCADE, rule.targets([entity_id])
                                )
                            )
                            cascaded[rule.target.value] = cascaded.get(rule.target.value, 0) + max(result.rowcount, 0)

                        affected = {entity_type} | cascade_targets(entity_type)
                        visible = await self._write_visibility_stats(db, user_id, sorted(affected, key=lambda t: t.value))
            except UserNotFoundError:
                raise
            except Exception as e:
                logger.error(
                    f"Hiding {entity_type.value} {entity_id} failed for user {user_id}: {type(e).__name__}: {e}"
                )
                raise ComputationFailure(user_id, "hide", e) from e

        logger.info(f"User {user_id} hid {entity_type.value} {entity_id} (cascaded: {cascaded})")
        return {
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "cascaded": cascaded,
            "visible": {et.value: count for et, count in visible.items()},
        }

    async def _upsert_hidden_exclusion(
        self, db: AsyncSession, user_id: int, entity_type: EntityType, entity_id: str
    ) -> None:
        """Make sure the entity has an exclusion row, replacing a weaker reason with 'hidden'."""
        result = await db.execute(
            select(UserExcludedEntity.id, UserExcludedEntity.reason).where(
                UserExcludedEntity.user_id == user_id,
                UserExcludedEntity.entity_type == entity_type.value,
                UserExcludedEntity.entity_id == entity_id,
            )
        )
        row = result.one_or_none()
        if row is not None:
            current = ExclusionReason(row.reason)
            if stronger_reason(current, ExclusionReason.HIDDEN) == current:
                return
            await db.execute(delete(UserExcludedEntity).where(UserExcludedEntity.id == row.id))

        model = ENTITY_MODELS[entity_type]
        live = select(model.id.label("entity_id")).where(model.id == entity_id, model.deleted_at.is_(None))
        await db.execute(_insert_excluded(user_id, entity_type, ExclusionReason.HIDDEN, live))

    async def remove_hidden_entity(self, user_id: int, entity_type: "EntityType | str", entity_id: str) -> bool:
        """Unhide one entity.

        Only the raw hidden row is removed here. Other sources may still
        exclude the entity, so re-visibility is left to a full recompute that
        is queued durably and run in the background. Until it commits the
        user may see the entity as still excluded, never the reverse.

        Returns True if a hidden row was removed.
        """
        entity_type = parse_entity_type(entity_type)
        entity_id = _validate_entity_id(entity_id)

        async with self._user_lock(user_id):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._lock_user(db, user_id)
                        result = await db.execute(
                            delete(UserHiddenEntity).where(
                                UserHiddenEntity.user_id == user_id,
                                UserHiddenEntity.entity_type == entity_type.value,
                                UserHiddenEntity.entity_id == entity_id,
                            )
                        )
                        removed = result.rowcount > 0
                        if removed:
                            await self._mark_pending(db, user_id, "unhide")
            except UserNotFoundError:
                raise
            except Exception as e:
                logger.error(
                    f"Unhiding {entity_type.value} {entity_id} failed for user {user_id}: {type(e).__name__}: {e}"
                )
                raise ComputationFailure(user_id, "unhide", e) from e

        if removed:
            self.schedule_deferred_recompute(user_id)
            logger.info(f"User {user_id} unhid {entity_type.value} {entity_id}; recompute queued")
        else:
            logger.debug(f"User {user_id} unhide of {entity_type.value} {entity_id}: not hidden")
        return removed

    async def unhide_all(self, user_id: int, entity_type: "EntityType | str | None" = None) -> int:
        """Remove all of the user's hidden rows (optionally one type) and recompute synchronously.

        The pending marker is written with the delete, so a failed recompute
        is picked up by a retry of this call or by reconcile_pending.
        """
        if entity_type is not None:
            entity_type = parse_entity_type(entity_type)

        async with self._user_lock(user_id):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._lock_user(db, user_id)
                        query = delete(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id)
                        if entity_type is not None:
                            query = query.where(UserHiddenEntity.entity_type == entity_type.value)
                        result = await db.execute(query)
                        removed = result.rowcount
                        if removed:
                            await self._mark_pending(db, user_id, "unhide")
                        marker = await db.execute(
                            select(PendingRecompute.user_id).where(PendingRecompute.user_id == user_id)
                        )
                        pending = marker.scalar_one_or_none() is not None
            except UserNotFoundError:
                raise
            except Exception as e:
                raise ComputationFailure(user_id, "unhide", e) from e

        if pending:
            started_at = datetime.utcnow()
            try:
                await self.recompute_for_user(user_id)
            except ExclusionError as e:
                await self._record_pending_failure(user_id, e)
                raise
            await self._clear_pending(user_id, started_at)
        logger.info(f"User {user_id} unhid {removed} entities ({entity_type.value if entity_type else 'all types'})")
        return removed

    async def list_hidden_entities(self, user_id: int, entity_type: "EntityType | str | None" = None) -> list[dict]:
        """The user's hidden rows, newest first, with display names where the entity still exists."""
        if entity_type is not None:
            entity_type = parse_entity_type(entity_type)

        async with self._session_factory() as db:
            user = await db.execute(select(User.id).where(User.id == user_id))
            if user.scalar_one_or_none() is None:
                raise UserNotFoundError(user_id)

            query = (
                select(UserHiddenEntity)
                .where(UserHiddenEntity.user_id == user_id)
                .order_by(UserHiddenEntity.hidden_at.desc(), UserHiddenEntity.id.desc())
            )
            if entity_type is not None:
                query = query.where(UserHiddenEntity.entity_type == entity_type.value)
            rows = (await db.execute(query)).scalars().all()

            names: dict[tuple[str, str], str | None] = {}
            by_type: dict[str, list[str]] = {}
            for row in rows:
                by_type.setdefault(row.entity_type, []).append(row.entity_id)
            for type_name, ids in by_type.items():
                et = parse_entity_type(type_name)
                model = ENTITY_MODELS[et]
                result = await db.execute(
                    select(model.id, ENTITY_NAME_COLUMNS[et]).where(
                        model.id.in_(ids), model.deleted_at.is_(None)
                    )
                )
                for entity_id, name in result.all():
                    names[(type_name, entity_id)] = name

        return [
            {
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "name": names.get((row.entity_type, row.entity_id)),
                "hidden_at": row.hidden_at,
            }
            for row in rows
        ]

    # ==================== Deferred recompute ====================

    async def _mark_pending(self, db: AsyncSession, user_id: int, reason: str) -> None:
        """Record (or refresh) the durable marker for a deferred recompute."""
        await db.execute(delete(PendingRecompute).where(PendingRecompute.user_id == user_id))
        await db.execute(
            insert(PendingRecompute).values(
                user_id=user_id,
                reason=reason,
                requested_at=datetime.utcnow(),
                attempts=0,
            )
        )

    def schedule_deferred_recompute(self, user_id: int) -> asyncio.Task:
        return self._tasks.create_task(
            self.run_deferred_recompute(user_id),
            name=f"deferred_recompute:{user_id}",
        )

    async def run_deferred_recompute(self, user_id: int, delay: bool = True) -> None:
        """Run a queued recompute with retry; clear the marker only if it was not re-requested."""
        if delay and self._deferred_delay > 0:
            await asyncio.sleep(self._deferred_delay)

        started_at = datetime.utcnow()
        try:
            await retry_async(self.recompute_for_user, user_id, config=self._retry_config)
        except UserNotFoundError:
            logger.info(f"Dropping deferred recompute for deleted user {user_id}")
            await self._clear_pending(user_id, started_at)
            return
        except Exception as e:
            await self._record_pending_failure(user_id, e)
            raise
        await self._clear_pending(user_id, started_at)

    async def _clear_pending(self, user_id: int, started_at: datetime) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    delete(PendingRecompute).where(
                        PendingRecompute.user_id == user_id,
                        PendingRecompute.requested_at <= started_at,
                    )
                )

    async def _record_pending_failure(self, user_id: int, error: Exception) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(PendingRecompute)
                    .where(PendingRecompute.user_id == user_id)
                    .values(
                        attempts=PendingRecompute.attempts + 1,
                        last_error=f"{type(error).__name__}: {error}"[:1000],
                    )
                )

    async def reconcile_pending(self) -> int:
        """Re-run deferred recomputes whose background task never finished.

        Picks up pending rows older than the stale threshold that have no live
        task in this process. Returns how many were processed.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self._stale_after)
        async with self._session_factory() as db:
            result = await db.execute(
                select(PendingRecompute.user_id)
                .where(PendingRecompute.requested_at <= cutoff)
                .order_by(PendingRecompute.requested_at)
            )
            user_ids = list(result.scalars().all())

        processed = 0
        for user_id in user_ids:
            if self._tasks.get_task(f"deferred_recompute:{user_id}") is not None:
                continue
            try:
                await self.run_deferred_recompute(user_id, delay=False)
            except ExclusionError as e:
                # Failure is recorded on the pending row; the next sweep retries it
                logger.warning(f"Reconciliation recompute failed for user {user_id}: {e}")
            processed += 1

        if user_ids:
            logger.info(f"Reconciliation processed {processed}/{len(user_ids)} pending recomputes")
        return processed


def _validate_entity_id(entity_id) -> str:
    if isinstance(entity_id, int) and not isinstance(entity_id, bool):
        entity_id = str(entity_id)
    if not isinstance(entity_id, str) or not entity_id.strip():
        raise InputValidationError("Entity ID must be a non-empty string", field="entity_id")
    return entity_id.strip()


@lru_cache
def get_exclusion_service() -> ExclusionComputationService:
    """Process-wide engine bound to the application session factory."""
    return ExclusionComputationService(async_session_maker, TaskManager.get_instance())
