"""Create the per-user exclusion store, visibility stats and deferred recompute queue.

The users table and the library tables are created by the library sync;
these three tables are owned by the exclusion engine.

Revision ID: 001_create_exclusion_store
Revises:
"""

from alembic import op
import sqlalchemy as sa

revision = "001_create_exclusion_store"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_excluded_entities",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("computed_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_excluded_entity"),
    )
    # Anti-join per (user, type) is the hot read path
    op.create_index("idx_user_excluded_user_type", "user_excluded_entities", ["user_id", "entity_type"])
    op.create_index("idx_user_excluded_type_entity", "user_excluded_entities", ["entity_type", "entity_id"])
    op.create_index(
        "idx_user_excluded_user_type_reason",
        "user_excluded_entities",
        ["user_id", "entity_type", "reason"],
    )

    op.create_table(
        "user_entity_stats",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("visible_count", sa.Integer, nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "entity_type", name="uq_user_entity_stats"),
    )

    op.create_table(
        "pending_recomputes",
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("reason", sa.String(50), nullable=False, server_default="unhide"),
        sa.Column("requested_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
    )
    op.create_index("idx_pending_recomputes_requested", "pending_recomputes", ["requested_at"])


def downgrade() -> None:
    op.drop_index("idx_pending_recomputes_requested", table_name="pending_recomputes")
    op.drop_table("pending_recomputes")
    op.drop_table("user_entity_stats")
    op.drop_index("idx_user_excluded_user_type_reason", table_name="user_excluded_entities")
    op.drop_index("idx_user_excluded_type_entity", table_name="user_excluded_entities")
    op.drop_index("idx_user_excluded_user_type", table_name="user_excluded_entities")
    op.drop_table("user_excluded_entities")
