"""Add a not-before timestamp for requeued tasks (retry backoff)."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("swarm_tasks") as batch:
        batch.add_column(sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True))
        batch.create_index("idx_swarm_tasks_retry_after", ["retry_after"])


def downgrade() -> None:
    with op.batch_alter_table("swarm_tasks") as batch:
        batch.drop_index("idx_swarm_tasks_retry_after")
        batch.drop_column("retry_after")
