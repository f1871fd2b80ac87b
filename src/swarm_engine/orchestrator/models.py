"""Domain models for swarms, tasks, sandboxes and orchestration config."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SwarmStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Higher rank is dispatched first."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}


class SandboxStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DESTROYED = "destroyed"


class OutcomeKind(str, Enum):
    """How one execution attempt ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class RetryDecision(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REQUEUE = "requeue"


class FailureClass(str, Enum):
    """Normalized failure classes attached to failed attempts."""

    TIMEOUT = "timeout"
    PROVISION = "provision"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    SANDBOX_LOST = "sandbox_lost"
    ACCESS_OR_AUTH = "access_or_auth"
    AGENT_EXIT = "agent_exit"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class SwarmCreate:
    """Input payload for creating a swarm."""

    name: str
    description: str = ""
    project_ref: str | None = None
    swarm_id: str | None = None


@dataclass(slots=True)
class SwarmView:
    swarm_id: str
    name: str
    description: str
    status: SwarmStatus
    project_ref: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task inside a swarm."""

    swarm_id: str
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    task_id: str | None = None


@dataclass(slots=True)
class TaskUpdate:
    """Partial edit of a non-running task; ``None`` leaves a field unchanged."""

    title: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    depends_on: tuple[str, ...] | None = None
    tags: tuple[str, ...] | None = None

    def is_empty(self) -> bool:
        return (
            self.title is None
            and self.description is None
            and self.priority is None
            and self.depends_on is None
            and self.tags is None
        )


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, executor and CLI logic."""

    task_id: str
    swarm_id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    sandbox_ref: str | None
    depends_on: frozenset[str]
    triggers_after: frozenset[str]
    result: str | None
    error: str | None
    tags: tuple[str, ...]
    retry_count: int
    attempt: int
    sequence: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    retry_after: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskLogView:
    log_id: int
    task_id: str
    attempt: int
    seq: int
    stream: str
    line: str
    created_at: datetime


@dataclass(slots=True)
class SandboxView:
    sandbox_id: str
    provider_ref: str | None
    swarm_id: str | None
    snapshot: str
    status: SandboxStatus
    current_task_ref: str | None
    created_at: datetime
    last_used_at: datetime | None
    destroyed_at: datetime | None

    def idle_since(self) -> datetime:
        return self.last_used_at or self.created_at


@dataclass(frozen=True, slots=True)
class OrchestrationConfig:
    """Shared config record, read once at the start of every cycle."""

    pool_max_sandboxes: int
    pool_idle_timeout_seconds: int
    default_snapshot: str
    trigger_enabled: bool
    trigger_poll_interval_seconds: int
    execution_timeout_seconds: int
    max_retries: int


@dataclass(slots=True)
class ConfigUpdate:
    """Partial update of the orchestration config; ``None`` keeps the value."""

    pool_max_sandboxes: int | None = None
    pool_idle_timeout_seconds: int | None = None
    default_snapshot: str | None = None
    trigger_enabled: bool | None = None
    trigger_poll_interval_seconds: int | None = None
    execution_timeout_seconds: int | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ExecutionOutcome:
    """Result of driving one task attempt inside one sandbox."""

    kind: OutcomeKind
    result: str | None = None
    error: str | None = None
    exit_code: int | None = None
    failure_class: FailureClass | None = None
    sandbox_lost: bool = False
    duration_seconds: float = 0.0
    failure_details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass(slots=True)
class PoolStats:
    total: int = 0
    busy: int = 0
    idle: int = 0
    destroyed: int = 0


@dataclass(slots=True)
class SandboxInfo:
    sandbox: SandboxView
    idle_seconds: float | None


@dataclass(slots=True)
class PoolStatus:
    config: OrchestrationConfig
    stats: PoolStats
    sandboxes: list[SandboxInfo]


@dataclass(slots=True)
class BlockedTask:
    """Pending task that can never run because a dependency will not complete."""

    task_id: str
    blocking: dict[str, str]
