"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel

DEFAULT_CONFIG_KEY = "default"


class Swarm(SQLModel, table=True):
    __tablename__ = "swarms"  # type: ignore[bad-override]

    swarm_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    project_ref: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SwarmTask(SQLModel, table=True):
    __tablename__ = "swarm_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_swarm_tasks_swarm_status", "swarm_id", "status"),
        Index("idx_swarm_tasks_fifo", "created_at", "sequence"),
        Index("idx_swarm_tasks_retry_after", "retry_after"),
    )

    task_id: str = Field(primary_key=True)
    swarm_id: str = Field(
        sa_column=Column(
            ForeignKey("swarms.swarm_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(index=True)
    sandbox_ref: str | None = Field(default=None, index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    retry_count: int = Field(default=0)
    attempt: int = Field(default=0)
    sequence: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    retry_after: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TaskDependency(SQLModel, table=True):
    """One `depends_on` edge; read backwards it is a `triggers_after` edge."""

    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
        Index("idx_task_dependencies_reverse", "depends_on_id"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("swarm_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    depends_on_id: str = Field(
        sa_column=Column(
            ForeignKey("swarm_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )


class Sandbox(SQLModel, table=True):
    __tablename__ = "sandboxes"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_sandboxes_reuse", "status", "swarm_id", "snapshot"),
    )

    sandbox_id: str = Field(primary_key=True)
    provider_ref: str | None = Field(default=None, index=True)
    swarm_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("swarms.swarm_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    snapshot: str
    status: str = Field(index=True)
    current_task_ref: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_used_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    destroyed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class OrchestrationConfigRow(SQLModel, table=True):
    __tablename__ = "orchestration_config"  # type: ignore[bad-override]

    config_key: str = Field(default=DEFAULT_CONFIG_KEY, primary_key=True)
    pool_max_sandboxes: int
    pool_idle_timeout_seconds: int
    default_snapshot: str
    trigger_enabled: bool
    trigger_poll_interval_seconds: int
    execution_timeout_seconds: int
    max_retries: int
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("swarm_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskLogLine(SQLModel, table=True):
    __tablename__ = "task_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_logs_task_attempt_seq", "task_id", "attempt", "seq"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("swarm_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt: int
    seq: int
    stream: str
    line: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
