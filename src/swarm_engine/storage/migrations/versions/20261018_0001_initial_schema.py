"""Initial orchestration schema: swarms, tasks, dependency edges, sandboxes, config."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "swarms",
        sa.Column("swarm_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("project_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("swarm_id"),
    )
    op.create_index("ix_swarms_name", "swarms", ["name"])
    op.create_index("ix_swarms_status", "swarms", ["status"])
    op.create_index("ix_swarms_project_ref", "swarms", ["project_ref"])

    op.create_table(
        "swarm_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("swarm_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("sandbox_ref", sa.String(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["swarm_id"], ["swarms.swarm_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_swarm_tasks_swarm_id", "swarm_tasks", ["swarm_id"])
    op.create_index("ix_swarm_tasks_status", "swarm_tasks", ["status"])
    op.create_index("ix_swarm_tasks_priority", "swarm_tasks", ["priority"])
    op.create_index("ix_swarm_tasks_sandbox_ref", "swarm_tasks", ["sandbox_ref"])
    op.create_index("idx_swarm_tasks_swarm_status", "swarm_tasks", ["swarm_id", "status"])
    op.create_index("idx_swarm_tasks_fifo", "swarm_tasks", ["created_at", "sequence"])

    op.create_table(
        "task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["swarm_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["depends_on_id"],
            ["swarm_tasks.task_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
    )
    op.create_index("idx_task_dependencies_reverse", "task_dependencies", ["depends_on_id"])

    op.create_table(
        "sandboxes",
        sa.Column("sandbox_id", sa.String(), nullable=False),
        sa.Column("provider_ref", sa.String(), nullable=True),
        sa.Column("swarm_id", sa.String(), nullable=True),
        sa.Column("snapshot", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_task_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("destroyed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["swarm_id"], ["swarms.swarm_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("sandbox_id"),
    )
    op.create_index("ix_sandboxes_provider_ref", "sandboxes", ["provider_ref"])
    op.create_index("ix_sandboxes_swarm_id", "sandboxes", ["swarm_id"])
    op.create_index("ix_sandboxes_status", "sandboxes", ["status"])
    op.create_index("ix_sandboxes_current_task_ref", "sandboxes", ["current_task_ref"])
    op.create_index("idx_sandboxes_reuse", "sandboxes", ["status", "swarm_id", "snapshot"])

    op.create_table(
        "orchestration_config",
        sa.Column("config_key", sa.String(), nullable=False),
        sa.Column("pool_max_sandboxes", sa.Integer(), nullable=False),
        sa.Column("pool_idle_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("default_snapshot", sa.String(), nullable=False),
        sa.Column("trigger_enabled", sa.Boolean(), nullable=False),
        sa.Column("trigger_poll_interval_seconds", sa.Integer(), nullable=False),
        sa.Column("execution_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("config_key"),
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["swarm_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("ix_task_events_status_from", "task_events", ["status_from"])
    op.create_index("ix_task_events_status_to", "task_events", ["status_to"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])

    op.create_table(
        "task_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("stream", sa.String(), nullable=False),
        sa.Column("line", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["swarm_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_logs_task_id", "task_logs", ["task_id"])
    op.create_index(
        "idx_task_logs_task_attempt_seq",
        "task_logs",
        ["task_id", "attempt", "seq"],
    )


def downgrade() -> None:
    op.drop_table("task_logs")
    op.drop_table("task_events")
    op.drop_table("orchestration_config")
    op.drop_table("sandboxes")
    op.drop_table("task_dependencies")
    op.drop_table("swarm_tasks")
    op.drop_table("swarms")
