"""Create durable per-resource run locks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "resource_locks",
        sa.Column("resource_key", sa.String(), primary_key=True),
        sa.Column("holder_run_id", sa.String(), nullable=False),
        sa.Column("flow", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_resource_locks_holder_run_id",
        "resource_locks",
        ["holder_run_id"],
    )
    op.create_index(
        "idx_resource_locks_acquired_at",
        "resource_locks",
        ["acquired_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_resource_locks_acquired_at", table_name="resource_locks")
    op.drop_index("ix_resource_locks_holder_run_id", table_name="resource_locks")
    op.drop_table("resource_locks")
