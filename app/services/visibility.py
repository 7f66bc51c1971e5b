"""The per-user visibility predicate.

An entity is visible to a user when it is not soft-deleted and has no row in
user_excluded_entities for (user, type, id). The predicate is a correlated
NOT EXISTS so the database answers it from the unique
(user_id, entity_type, entity_id) index; nothing is filtered in Python.

Both the query layer and the engine's empty phase build their WHERE clauses
from these helpers, so there is exactly one definition of "visible".
"""

from sqlalchemy import and_, exists, select
from sqlalchemy.orm import aliased

from app.core.entities import EntityType
from app.db.models import ENTITY_MODELS, UserExcludedEntity


def not_excluded(user_id: int, entity_type: EntityType, id_column):
    """NOT EXISTS clause: id_column has no exclusion row for this user and type."""
    excl = aliased(UserExcludedEntity)
    return ~exists(
        select(excl.id).where(
            excl.user_id == user_id,
            excl.entity_type == entity_type.value,
            excl.entity_id == id_column,
        )
    )


def visible_clause(user_id: int, entity_type: EntityType, model=None):
    """Full visibility condition for rows of the type's model."""
    model = model if model is not None else ENTITY_MODELS[entity_type]
    return and_(
        model.deleted_at.is_(None),
        not_excluded(user_id, entity_type, model.id),
    )
