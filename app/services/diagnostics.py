"""Read-only reporting on the exclusion store for operators."""

import logging
from typing import TypedDict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import PendingRecompute, UserEntityStats, UserExcludedEntity

logger = logging.getLogger(__name__)


class UserExclusionCounts(TypedDict):
    user_id: int
    total: int
    by_type: dict[str, dict[str, int]]  # entity_type -> reason -> rows


class ExclusionReport(TypedDict):
    total_rows: int
    users: list[UserExclusionCounts]
    visible_counts: dict[int, dict[str, int]]
    pending_recomputes: list[dict]


async def build_exclusion_report(db: AsyncSession, user_id: int | None = None) -> ExclusionReport:
    """Exclusion-table size and per-user / type / reason row counts.

    Pass user_id to restrict the breakdown to one user; total_rows always
    covers the whole table.
    """
    total = await db.execute(select(func.count()).select_from(UserExcludedEntity))

    breakdown = (
        select(
            UserExcludedEntity.user_id,
            UserExcludedEntity.entity_type,
            UserExcludedEntity.reason,
            func.count(),
        )
        .group_by(UserExcludedEntity.user_id, UserExcludedEntity.entity_type, UserExcludedEntity.reason)
        .order_by(UserExcludedEntity.user_id, UserExcludedEntity.entity_type, UserExcludedEntity.reason)
    )
    stats_query = select(UserEntityStats.user_id, UserEntityStats.entity_type, UserEntityStats.visible_count)
    if user_id is not None:
        breakdown = breakdown.where(UserExcludedEntity.user_id == user_id)
        stats_query = stats_query.where(UserEntityStats.user_id == user_id)

    users: dict[int, UserExclusionCounts] = {}
    for uid, entity_type, reason, count in (await db.execute(breakdown)).all():
        entry = users.setdefault(uid, {"user_id": uid, "total": 0, "by_type": {}})
        entry["total"] += count
        entry["by_type"].setdefault(entity_type, {})[reason] = count

    visible: dict[int, dict[str, int]] = {}
    for uid, entity_type, count in (await db.execute(stats_query)).all():
        visible.setdefault(uid, {})[entity_type] = count

    pending = await db.execute(select(PendingRecompute).order_by(PendingRecompute.requested_at))

    return {
        "total_rows": total.scalar_one(),
        "users": sorted(users.values(), key=lambda u: u["user_id"]),
        "visible_counts": visible,
        "pending_recomputes": [
            {
                "user_id": row.user_id,
                "reason": row.reason,
                "requested_at": row.requested_at,
                "attempts": row.attempts,
                "last_error": row.last_error,
            }
            for row in pending.scalars().all()
        ],
    }
