"""Entity type and exclusion reason vocabulary shared by the engine and query layer."""

from enum import Enum

from app.core.errors import InputValidationError


class EntityType(str, Enum):
    """Library entity types that can be excluded for a user."""

    SCENE = "scene"
    PERFORMER = "performer"
    STUDIO = "studio"
    TAG = "tag"
    GROUP = "group"
    GALLERY = "gallery"
    IMAGE = "image"


class ExclusionReason(str, Enum):
    """Why an entity is not visible to a user."""

    RESTRICTED = "restricted"
    HIDDEN = "hidden"
    CASCADE = "cascade"
    EMPTY = "empty"


class RestrictionMode(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


# Lower number wins when an entity qualifies for several reasons.
# Only used to pick the stored reason; any reason means "not visible".
REASON_PRECEDENCE: dict[ExclusionReason, int] = {
    ExclusionReason.RESTRICTED: 0,
    ExclusionReason.HIDDEN: 1,
    ExclusionReason.CASCADE: 2,
    ExclusionReason.EMPTY: 3,
}

DIRECT_REASONS = (ExclusionReason.RESTRICTED.value, ExclusionReason.HIDDEN.value)

# Types with a parent/child hierarchy
HIERARCHICAL_TYPES = frozenset({EntityType.TAG, EntityType.STUDIO, EntityType.GROUP})

# Restriction rows written by the admin UI use plural names
_PLURALS = {
    "scenes": EntityType.SCENE,
    "performers": EntityType.PERFORMER,
    "studios": EntityType.STUDIO,
    "tags": EntityType.TAG,
    "groups": EntityType.GROUP,
    "galleries": EntityType.GALLERY,
    "images": EntityType.IMAGE,
}


def parse_entity_type(value: "str | EntityType") -> EntityType:
    """Normalize a singular or plural entity type name.

    Raises InputValidationError for anything that is not a library entity type.
    """
    if isinstance(value, EntityType):
        return value
    if not isinstance(value, str):
        raise InputValidationError(f"Entity type must be a string, got {type(value).__name__}")
    normalized = value.strip().lower()
    if normalized in _PLURALS:
        return _PLURALS[normalized]
    try:
        return EntityType(normalized)
    except ValueError:
        raise InputValidationError(
            f"Unknown entity type: {value!r}",
            field="entity_type",
        ) from None


def parse_restriction_mode(value: "str | RestrictionMode", restriction_id: int | None = None) -> RestrictionMode:
    """Normalize a restriction mode; the admin UI stores it upper-case."""
    if isinstance(value, RestrictionMode):
        return value
    try:
        return RestrictionMode(str(value).strip().lower())
    except ValueError:
        raise InputValidationError(
            f"Unknown restriction mode: {value!r}",
            field="mode",
            restriction_id=restriction_id,
        ) from None


def stronger_reason(a: ExclusionReason, b: ExclusionReason) -> ExclusionReason:
    """Return whichever reason takes precedence."""
    return a if REASON_PRECEDENCE[a] <= REASON_PRECEDENCE[b] else b
