"""Persistent store for swarms, tasks, sandboxes and orchestration config.

Every state transition is a conditional ``UPDATE ... WHERE status = ...``
checked through ``rowcount``; a transition that loses a race returns
``False``/``None`` instead of writing.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from swarm_engine.config import OrchestrationDefaults
from swarm_engine.errors import InvalidTransitionError, NotFoundError, ValidationError
from swarm_engine.orchestrator.dependencies import reverse_edges, validate_dependencies
from swarm_engine.orchestrator.models import (
    ConfigUpdate,
    OrchestrationConfig,
    SandboxStatus,
    SandboxView,
    SwarmCreate,
    SwarmStatus,
    SwarmView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskLogView,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from swarm_engine.storage.alembic_runner import upgrade_head
from swarm_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from swarm_engine.storage.sqlmodel_models import (
    DEFAULT_CONFIG_KEY,
    OrchestrationConfigRow,
    Sandbox,
    Swarm,
    SwarmTask,
    TaskDependency,
    TaskEvent,
    TaskLogLine,
)

_SWARM_TRANSITIONS: dict[SwarmStatus, set[SwarmStatus]] = {
    SwarmStatus.ACTIVE: {SwarmStatus.PAUSED, SwarmStatus.STOPPED},
    SwarmStatus.PAUSED: {SwarmStatus.ACTIVE, SwarmStatus.STOPPED},
    SwarmStatus.STOPPED: set(),
}


class OrchestratorRepository:
    """Store facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        defaults: OrchestrationDefaults | None = None,
    ) -> None:
        self.db_path = db_path
        self.defaults = defaults or OrchestrationDefaults()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and seed the config row."""

        upgrade_head(self.db_path)
        self._ensure_config_row()

    # ------------------------------------------------------------------ config

    def get_config(self) -> OrchestrationConfig:
        """Read the shared config record."""

        with Session(self.engine) as session:
            row = session.get(OrchestrationConfigRow, DEFAULT_CONFIG_KEY)
            if row is None:
                return _defaults_to_config(self.defaults)
            return _to_config(row)

    def update_config(self, changes: ConfigUpdate) -> OrchestrationConfig:
        """Validate and persist a partial config update."""

        self._ensure_config_row()
        with Session(self.engine) as session:
            row = session.get(OrchestrationConfigRow, DEFAULT_CONFIG_KEY)
            if row is None:
                raise NotFoundError("Orchestration config row is missing.")
            merged = _merge_config(_to_config(row), changes)
            validate_config(merged)
            row.pool_max_sandboxes = merged.pool_max_sandboxes
            row.pool_idle_timeout_seconds = merged.pool_idle_timeout_seconds
            row.default_snapshot = merged.default_snapshot
            row.trigger_enabled = merged.trigger_enabled
            row.trigger_poll_interval_seconds = merged.trigger_poll_interval_seconds
            row.execution_timeout_seconds = merged.execution_timeout_seconds
            row.max_retries = merged.max_retries
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            return merged

    def _ensure_config_row(self) -> None:
        with Session(self.engine) as session:
            if session.get(OrchestrationConfigRow, DEFAULT_CONFIG_KEY) is not None:
                return
            seeded = _defaults_to_config(self.defaults)
            validate_config(seeded)
            session.add(
                OrchestrationConfigRow(
                    config_key=DEFAULT_CONFIG_KEY,
                    pool_max_sandboxes=seeded.pool_max_sandboxes,
                    pool_idle_timeout_seconds=seeded.pool_idle_timeout_seconds,
                    default_snapshot=seeded.default_snapshot,
                    trigger_enabled=seeded.trigger_enabled,
                    trigger_poll_interval_seconds=seeded.trigger_poll_interval_seconds,
                    execution_timeout_seconds=seeded.execution_timeout_seconds,
                    max_retries=seeded.max_retries,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    # ------------------------------------------------------------------ swarms

    def create_swarm(self, payload: SwarmCreate) -> SwarmView:
        name = payload.name.strip()
        if not name:
            raise ValidationError("Swarm name must not be empty.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Swarm(
                swarm_id=payload.swarm_id or str(uuid4()),
                name=name,
                description=payload.description,
                status=SwarmStatus.ACTIVE.value,
                project_ref=payload.project_ref,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_swarm_view(row)

    def get_swarm(self, swarm_id: str) -> SwarmView | None:
        with Session(self.engine) as session:
            row = session.get(Swarm, swarm_id)
            return _to_swarm_view(row) if row is not None else None

    def list_swarms(self, *, status: SwarmStatus | None = None) -> list[SwarmView]:
        with Session(self.engine) as session:
            statement = select(Swarm).order_by(col(Swarm.created_at).asc())
            if status is not None:
                statement = statement.where(Swarm.status == status.value)
            rows = session.exec(statement).all()
        return [_to_swarm_view(row) for row in rows]

    def set_swarm_status(self, swarm_id: str, target: SwarmStatus) -> SwarmView:
        """Pause, resume or stop a swarm; stopped is terminal."""

        with Session(self.engine) as session:
            row = session.get(Swarm, swarm_id)
            if row is None:
                raise NotFoundError(f"Swarm not found: {swarm_id}")
            previous = SwarmStatus(row.status)
            if previous == target:
                return _to_swarm_view(row)
            if target not in _SWARM_TRANSITIONS[previous]:
                raise InvalidTransitionError(
                    f"Swarm {swarm_id} cannot go from {previous.value} to {target.value}.",
                )
            result = session.exec(
                sa_update(Swarm)
                .where(
                    col(Swarm.swarm_id) == swarm_id,
                    col(Swarm.status) == previous.value,
                )
                .values(status=target.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Swarm state changed concurrently; "
                    f"please retry command (swarm_id={swarm_id}).",
                )
            session.commit()
            refreshed = session.get(Swarm, swarm_id, populate_existing=True)
            if refreshed is None:
                raise NotFoundError(f"Swarm not found: {swarm_id}")
            return _to_swarm_view(refreshed)

    def delete_swarm(self, swarm_id: str) -> None:
        """Delete a swarm and, by cascade, its tasks. Refused while tasks run."""

        with Session(self.engine) as session:
            row = session.get(Swarm, swarm_id)
            if row is None:
                raise NotFoundError(f"Swarm not found: {swarm_id}")
            running = session.exec(
                select(func.count())
                .select_from(SwarmTask)
                .where(
                    SwarmTask.swarm_id == swarm_id,
                    SwarmTask.status == TaskStatus.RUNNING.value,
                ),
            ).one()
            if running:
                raise InvalidTransitionError(
                    f"Swarm {swarm_id} has {running} running task(s); cancel them first.",
                )
            session.exec(
                sa_delete(Swarm).where(col(Swarm.swarm_id) == swarm_id),
            )
            session.commit()

    # ------------------------------------------------------------------- tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Validate dependencies and insert a pending task with its edges."""

        title = payload.title.strip()
        if not title:
            raise ValidationError("Task title must not be empty.")
        task_id = payload.task_id or str(uuid4())
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            swarm = session.get(Swarm, payload.swarm_id)
            if swarm is None:
                raise NotFoundError(f"Swarm not found: {payload.swarm_id}")
            if swarm.status == SwarmStatus.STOPPED.value:
                raise InvalidTransitionError(
                    f"Swarm {payload.swarm_id} is stopped; its tasks are frozen.",
                )
            if session.get(SwarmTask, task_id) is not None:
                raise ValidationError(f"Task already exists: {task_id}")
            dependency_ids = self._validated_dependencies(
                session=session,
                task_id=task_id,
                swarm_id=payload.swarm_id,
                depends_on=payload.depends_on,
            )
            max_sequence = session.exec(select(func.max(SwarmTask.sequence))).one()
            row = SwarmTask(
                task_id=task_id,
                swarm_id=payload.swarm_id,
                title=title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                priority=payload.priority.value,
                tags_json=_dump_tags(payload.tags),
                retry_count=0,
                attempt=0,
                sequence=(max_sequence or 0) + 1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            for dependency_id in dependency_ids:
                session.add(TaskDependency(task_id=task_id, depends_on_id=dependency_id))
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "priority": payload.priority.value,
                    "depends_on": list(dependency_ids),
                },
            )
            session.commit()
            return self._task_view(session, task_id)

    def update_task(self, task_id: str, changes: TaskUpdate) -> TaskView:
        """Edit a task that is not running; dependency edits are re-validated."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous == TaskStatus.RUNNING:
                raise InvalidTransitionError(f"Task {task_id} is running and cannot be edited.")
            swarm = session.get(Swarm, row.swarm_id)
            if swarm is not None and swarm.status == SwarmStatus.STOPPED.value:
                raise InvalidTransitionError(
                    f"Swarm {row.swarm_id} is stopped; its tasks are frozen.",
                )
            if changes.is_empty():
                return self._task_view(session, task_id)

            values: dict[str, object] = {"updated_at": to_db_datetime(utc_now())}
            if changes.title is not None:
                title = changes.title.strip()
                if not title:
                    raise ValidationError("Task title must not be empty.")
                values["title"] = title
            if changes.description is not None:
                values["description"] = changes.description
            if changes.priority is not None:
                values["priority"] = changes.priority.value
            if changes.tags is not None:
                values["tags_json"] = _dump_tags(changes.tags)

            dependency_ids: tuple[str, ...] | None = None
            if changes.depends_on is not None:
                dependency_ids = self._validated_dependencies(
                    session=session,
                    task_id=task_id,
                    swarm_id=row.swarm_id,
                    depends_on=changes.depends_on,
                )

            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while editing; "
                    f"please retry command (task_id={task_id}).",
                )
            if dependency_ids is not None:
                session.exec(
                    sa_delete(TaskDependency).where(col(TaskDependency.task_id) == task_id),
                )
                for dependency_id in dependency_ids:
                    session.add(TaskDependency(task_id=task_id, depends_on_id=dependency_id))
            details = {key: value for key, value in values.items() if key != "updated_at"}
            if dependency_ids is not None:
                details["depends_on"] = list(dependency_ids)
            details.pop("tags_json", None)
            if changes.tags is not None:
                details["tags"] = list(changes.tags)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="updated",
                status_from=previous,
                status_to=previous,
                details=details,
            )
            session.commit()
            return self._task_view(session, task_id)

    def delete_task(self, task_id: str) -> None:
        """Delete a task nobody depends on and that is not running."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status == TaskStatus.RUNNING.value:
                raise InvalidTransitionError(f"Task {task_id} is running and cannot be deleted.")
            dependents = session.exec(
                select(TaskDependency.task_id).where(TaskDependency.depends_on_id == task_id),
            ).all()
            if dependents:
                raise InvalidTransitionError(
                    f"Task {task_id} is a dependency of: {', '.join(sorted(dependents))}.",
                )
            result = session.exec(
                sa_delete(SwarmTask).where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == row.status,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while deleting; "
                    f"please retry command (task_id={task_id}).",
                )
            session.commit()

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            if session.get(SwarmTask, task_id) is None:
                return None
            return self._task_view(session, task_id)

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        with Session(self.engine) as session:
            status = session.exec(
                select(SwarmTask.status).where(SwarmTask.task_id == task_id),
            ).one_or_none()
        return TaskStatus(status) if status is not None else None

    def list_tasks(
        self,
        *,
        swarm_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in arrival order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(SwarmTask).order_by(
                col(SwarmTask.created_at).asc(),
                col(SwarmTask.sequence).asc(),
            )
            if swarm_id is not None:
                statement = statement.where(SwarmTask.swarm_id == swarm_id)
            if status is not None:
                statement = statement.where(SwarmTask.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            edges = self._edges_for(session, [row.task_id for row in rows])
        return [_to_task_view(row, *edges) for row in rows]

    def list_pending_tasks(self, swarm_id: str) -> list[TaskView]:
        return self.list_tasks(swarm_id=swarm_id, status=TaskStatus.PENDING)

    def list_running_tasks(self) -> list[TaskView]:
        return self.list_tasks(status=TaskStatus.RUNNING)

    def swarm_task_statuses(self, swarm_id: str) -> dict[str, TaskStatus]:
        """Status of every task in the swarm, keyed by id."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SwarmTask.task_id, SwarmTask.status).where(
                    SwarmTask.swarm_id == swarm_id,
                ),
            ).all()
        return {task_id: TaskStatus(status) for task_id, status in rows}

    def count_tasks_by_status(
        self,
        *,
        swarm_ids: Sequence[str] | None = None,
    ) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            statement = select(SwarmTask.status, func.count()).group_by(SwarmTask.status)
            if swarm_ids is not None:
                if not swarm_ids:
                    return dict.fromkeys(TaskStatus, 0)
                statement = statement.where(col(SwarmTask.swarm_id).in_(list(swarm_ids)))
            rows = session.exec(statement).all()
        counts = dict.fromkeys(TaskStatus, 0)
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            if session.get(SwarmTask, task_id) is None:
                return None
            task = self._task_view(session, task_id)
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    # ------------------------------------------------------ engine transitions

    def start_task(self, *, task_id: str, sandbox_id: str) -> TaskView | None:
        """Atomically move a pending task to running on ``sandbox_id``.

        Returns None when the task is no longer pending, is still backing off
        after a failed attempt, or one of its dependencies is no longer
        completed; nothing is written in that case.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == TaskStatus.PENDING.value,
                    or_(col(SwarmTask.retry_after).is_(None), col(SwarmTask.retry_after) <= now),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    sandbox_ref=sandbox_id,
                    attempt=SwarmTask.attempt + 1,
                    retry_after=None,
                    started_at=now,
                    completed_at=None,
                    result=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            unfinished = session.exec(
                select(func.count())
                .select_from(TaskDependency)
                .join(SwarmTask, col(SwarmTask.task_id) == col(TaskDependency.depends_on_id))
                .where(
                    TaskDependency.task_id == task_id,
                    SwarmTask.status != TaskStatus.COMPLETED.value,
                ),
            ).one()
            if unfinished:
                session.rollback()
                return None
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="dispatched",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                details={"sandbox_id": sandbox_id, "attempt": row.attempt},
            )
            session.commit()
            return self._task_view(session, task_id)

    def complete_task(self, *, task_id: str, result: str) -> bool:
        """Mark a running task as completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    sandbox_ref=None,
                    result=result,
                    error=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"result_chars": len(result)},
            )
            session.commit()
            return True

    def requeue_task(
        self,
        *,
        task_id: str,
        retry_count: int,
        error: str,
        retry_after: datetime | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Send a running task back to pending after a failed attempt.

        ``retry_after`` is the earliest time the task may be dispatched again.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    sandbox_ref=None,
                    retry_count=retry_count,
                    error=error,
                    started_at=None,
                    retry_after=to_db_datetime(retry_after) if retry_after else None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            event_details: dict[str, object] = {"retry_count": retry_count, "error": error}
            if retry_after is not None:
                event_details["retry_after"] = to_utc_aware(retry_after).isoformat()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.PENDING,
                details={**event_details, **(details or {})},
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        retry_count: int,
        error: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a running task as permanently failed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    sandbox_ref=None,
                    retry_count=retry_count,
                    error=error,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={"retry_count": retry_count, "error": error, **(details or {})},
            )
            session.commit()
            return True

    def record_provision_failure(
        self,
        *,
        task_id: str,
        expected_retry_count: int,
        retry_count: int,
        error: str,
        terminal: bool,
        retry_after: datetime | None = None,
    ) -> bool:
        """Charge a failed provisioning attempt to a still-pending task."""

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {
            "retry_count": retry_count,
            "error": error,
            "retry_after": to_db_datetime(retry_after) if retry_after else None,
            "updated_at": now,
        }
        event_details: dict[str, object] = {"retry_count": retry_count, "error": error}
        status_to = TaskStatus.PENDING
        if terminal:
            status_to = TaskStatus.FAILED
            values["status"] = TaskStatus.FAILED.value
            values["completed_at"] = now
            values["retry_after"] = None
        elif retry_after is not None:
            event_details["retry_after"] = to_utc_aware(retry_after).isoformat()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == TaskStatus.PENDING.value,
                    col(SwarmTask.retry_count) == expected_retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="provision_failed",
                status_from=TaskStatus.PENDING,
                status_to=status_to,
                details=event_details,
            )
            session.commit()
            return True

    def retry_task(self, task_id: str) -> TaskView:
        """Manual retry of a failed/cancelled task; resets the retry counter."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
                raise InvalidTransitionError(
                    f"Only failed/cancelled tasks can be retried manually, got {row.status}.",
                )
            swarm = session.get(Swarm, row.swarm_id)
            if swarm is not None and swarm.status == SwarmStatus.STOPPED.value:
                raise InvalidTransitionError(
                    f"Swarm {row.swarm_id} is stopped; its tasks are frozen.",
                )
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    retry_count=0,
                    sandbox_ref=None,
                    result=None,
                    error=None,
                    started_at=None,
                    completed_at=None,
                    retry_after=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while retrying; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=TaskStatus.PENDING,
                details={},
            )
            session.commit()
            return self._task_view(session, task_id)

    def cancel_task(self, task_id: str) -> TaskStatus:
        """Cancel a pending/running task. Returns the status it was cancelled from."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.PENDING, TaskStatus.RUNNING}:
                raise InvalidTransitionError(f"Task cannot be cancelled from status={row.status}")
            result = session.exec(
                sa_update(SwarmTask)
                .where(
                    col(SwarmTask.task_id) == task_id,
                    col(SwarmTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    sandbox_ref=None,
                    error=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={"sandbox_id": row.sandbox_ref} if row.sandbox_ref else {},
            )
            session.commit()
            return previous

    def record_blocked(self, *, task_id: str, blocking: dict[str, str]) -> None:
        """Audit a pending task that waits on a dependency that will not complete."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="blocked_by_dependency",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.PENDING,
                details={"blocking": blocking},
            )
            session.commit()

    # -------------------------------------------------------------------- logs

    def append_task_logs(
        self,
        *,
        task_id: str,
        attempt: int,
        lines: Iterable[tuple[str, str]],
    ) -> int:
        """Append ``(stream, line)`` pairs after the attempt's last sequence number."""

        batch = list(lines)
        if not batch:
            return 0
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            last_seq = session.exec(
                select(func.max(TaskLogLine.seq)).where(
                    TaskLogLine.task_id == task_id,
                    TaskLogLine.attempt == attempt,
                ),
            ).one()
            next_seq = (last_seq or 0) + 1
            for offset, (stream, line) in enumerate(batch):
                session.add(
                    TaskLogLine(
                        task_id=task_id,
                        attempt=attempt,
                        seq=next_seq + offset,
                        stream=stream,
                        line=line,
                        created_at=now,
                    ),
                )
            session.commit()
        return len(batch)

    def list_task_logs(
        self,
        task_id: str,
        *,
        attempt: int | None = None,
        after_id: int = 0,
        limit: int | None = None,
    ) -> list[TaskLogView]:
        with Session(self.engine) as session:
            statement = (
                select(TaskLogLine)
                .where(TaskLogLine.task_id == task_id, col(TaskLogLine.id) > after_id)
                .order_by(col(TaskLogLine.id).asc())
            )
            if attempt is not None:
                statement = statement.where(TaskLogLine.attempt == attempt)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            TaskLogView(
                log_id=row.id or 0,
                task_id=row.task_id,
                attempt=row.attempt,
                seq=row.seq,
                stream=row.stream,
                line=row.line,
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    # --------------------------------------------------------------- sandboxes

    def count_live_sandboxes(self) -> int:
        """Number of sandboxes counted against capacity (busy + idle)."""

        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(Sandbox)
                .where(
                    col(Sandbox.status).in_(
                        [SandboxStatus.BUSY.value, SandboxStatus.IDLE.value],
                    ),
                ),
            ).one()
        return int(count)

    def claim_idle_sandbox(
        self,
        *,
        swarm_id: str,
        snapshot: str,
        task_id: str,
    ) -> SandboxView | None:
        """Atomically take an idle sandbox of the same swarm and snapshot."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Sandbox)
                    .where(
                        Sandbox.status == SandboxStatus.IDLE.value,
                        Sandbox.swarm_id == swarm_id,
                        Sandbox.snapshot == snapshot,
                        col(Sandbox.provider_ref).is_not(None),
                    )
                    .order_by(col(Sandbox.last_used_at).desc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                result = session.exec(
                    sa_update(Sandbox)
                    .where(
                        col(Sandbox.sandbox_id) == candidate.sandbox_id,
                        col(Sandbox.status) == SandboxStatus.IDLE.value,
                    )
                    .values(
                        status=SandboxStatus.BUSY.value,
                        current_task_ref=task_id,
                        last_used_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(Sandbox, candidate.sandbox_id, populate_existing=True)
                if claimed is None:
                    continue
                return _to_sandbox_view(claimed)

    def reserve_sandbox(self, *, swarm_id: str, snapshot: str, task_id: str) -> SandboxView:
        """Insert a busy row for a sandbox that is about to be provisioned."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Sandbox(
                sandbox_id=str(uuid4()),
                provider_ref=None,
                swarm_id=swarm_id,
                snapshot=snapshot,
                status=SandboxStatus.BUSY.value,
                current_task_ref=task_id,
                created_at=now,
                last_used_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_sandbox_view(row)

    def attach_provider_ref(self, *, sandbox_id: str, provider_ref: str) -> SandboxView | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Sandbox)
                .where(
                    col(Sandbox.sandbox_id) == sandbox_id,
                    col(Sandbox.status) == SandboxStatus.BUSY.value,
                )
                .values(provider_ref=provider_ref),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(Sandbox, sandbox_id, populate_existing=True)
            return _to_sandbox_view(row) if row is not None else None

    def release_sandbox(self, sandbox_id: str) -> bool:
        """busy -> idle, stamping ``last_used_at``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Sandbox)
                .where(
                    col(Sandbox.sandbox_id) == sandbox_id,
                    col(Sandbox.status) == SandboxStatus.BUSY.value,
                )
                .values(
                    status=SandboxStatus.IDLE.value,
                    current_task_ref=None,
                    last_used_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_sandbox_destroyed(
        self,
        sandbox_id: str,
        *,
        expected_status: SandboxStatus | None = None,
    ) -> SandboxView | None:
        """Move a sandbox to destroyed; returns the row as it was before.

        None means it was already destroyed or ``expected_status`` no longer
        matched.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Sandbox, sandbox_id)
            if row is None:
                raise NotFoundError(f"Sandbox not found: {sandbox_id}")
            before = _to_sandbox_view(row)
            if before.status == SandboxStatus.DESTROYED:
                return None
            guard = expected_status or before.status
            result = session.exec(
                sa_update(Sandbox)
                .where(
                    col(Sandbox.sandbox_id) == sandbox_id,
                    col(Sandbox.status) == guard.value,
                )
                .values(
                    status=SandboxStatus.DESTROYED.value,
                    current_task_ref=None,
                    destroyed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return before

    def get_sandbox(self, sandbox_id: str) -> SandboxView | None:
        with Session(self.engine) as session:
            row = session.get(Sandbox, sandbox_id)
            return _to_sandbox_view(row) if row is not None else None

    def list_sandboxes(
        self,
        *,
        status: SandboxStatus | None = None,
        swarm_id: str | None = None,
        include_destroyed: bool = True,
    ) -> list[SandboxView]:
        with Session(self.engine) as session:
            statement = select(Sandbox).order_by(col(Sandbox.created_at).asc())
            if status is not None:
                statement = statement.where(Sandbox.status == status.value)
            elif not include_destroyed:
                statement = statement.where(Sandbox.status != SandboxStatus.DESTROYED.value)
            if swarm_id is not None:
                statement = statement.where(Sandbox.swarm_id == swarm_id)
            rows = session.exec(statement).all()
        return [_to_sandbox_view(row) for row in rows]

    def list_idle_sandboxes_before(self, cutoff: datetime) -> list[SandboxView]:
        """Idle sandboxes whose last use (or creation) is older than ``cutoff``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Sandbox)
                .where(
                    Sandbox.status == SandboxStatus.IDLE.value,
                    func.coalesce(Sandbox.last_used_at, Sandbox.created_at)
                    <= to_db_datetime(cutoff),
                )
                .order_by(col(Sandbox.last_used_at).asc()),
            ).all()
        return [_to_sandbox_view(row) for row in rows]

    # ----------------------------------------------------------------- helpers

    def _validated_dependencies(
        self,
        *,
        session: Session,
        task_id: str,
        swarm_id: str,
        depends_on: Iterable[str],
    ) -> tuple[str, ...]:
        requested = [item for item in depends_on]
        edge_rows = session.exec(
            select(TaskDependency.task_id, TaskDependency.depends_on_id)
            .join(SwarmTask, col(SwarmTask.task_id) == col(TaskDependency.task_id))
            .where(SwarmTask.swarm_id == swarm_id),
        ).all()
        edges: dict[str, set[str]] = {}
        for source, target in edge_rows:
            edges.setdefault(source, set()).add(target)
        known = session.exec(
            select(SwarmTask.task_id, SwarmTask.swarm_id).where(
                col(SwarmTask.task_id).in_([item.strip() for item in requested]),
            ),
        ).all()
        return validate_dependencies(
            task_id=task_id,
            swarm_id=swarm_id,
            depends_on=requested,
            edges=edges,
            task_swarms=dict(known),
        )

    def _edges_for(
        self,
        session: Session,
        task_ids: Sequence[str],
    ) -> tuple[dict[str, set[str]], dict[str, set[str]]]:
        if not task_ids:
            return {}, {}
        rows = session.exec(
            select(TaskDependency.task_id, TaskDependency.depends_on_id).where(
                col(TaskDependency.task_id).in_(list(task_ids))
                | col(TaskDependency.depends_on_id).in_(list(task_ids)),
            ),
        ).all()
        forward: dict[str, set[str]] = {}
        for source, target in rows:
            forward.setdefault(source, set()).add(target)
        return forward, reverse_edges(forward)

    def _task_view(self, session: Session, task_id: str) -> TaskView:
        row = session.get(SwarmTask, task_id, populate_existing=True)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        forward, reverse = self._edges_for(session, [task_id])
        return _to_task_view(row, forward, reverse)

    def _get_task_row(self, *, session: Session, task_id: str) -> SwarmTask:
        row = session.get(SwarmTask, task_id)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def validate_config(config: OrchestrationConfig) -> None:
    """Raise ValidationError for values the engine cannot run with."""

    if config.pool_max_sandboxes < 1:
        raise ValidationError("pool_max_sandboxes must be >= 1.")
    if config.pool_idle_timeout_seconds <= 0:
        raise ValidationError("pool_idle_timeout_seconds must be > 0.")
    if not config.default_snapshot.strip():
        raise ValidationError("default_snapshot must not be empty.")
    if config.trigger_poll_interval_seconds < 1:
        raise ValidationError("trigger_poll_interval_seconds must be >= 1.")
    if config.execution_timeout_seconds <= 0:
        raise ValidationError("execution_timeout_seconds must be > 0.")
    if config.max_retries < 0:
        raise ValidationError("max_retries must be >= 0.")


def _merge_config(current: OrchestrationConfig, changes: ConfigUpdate) -> OrchestrationConfig:
    values = {
        item.name: getattr(changes, item.name)
        for item in fields(changes)
        if getattr(changes, item.name) is not None
    }
    return replace(current, **values)


def _defaults_to_config(defaults: OrchestrationDefaults) -> OrchestrationConfig:
    return OrchestrationConfig(
        pool_max_sandboxes=defaults.pool_max_sandboxes,
        pool_idle_timeout_seconds=defaults.pool_idle_timeout_seconds,
        default_snapshot=defaults.default_snapshot,
        trigger_enabled=defaults.trigger_enabled,
        trigger_poll_interval_seconds=defaults.trigger_poll_interval_seconds,
        execution_timeout_seconds=defaults.execution_timeout_seconds,
        max_retries=defaults.max_retries,
    )


def _to_config(row: OrchestrationConfigRow) -> OrchestrationConfig:
    return OrchestrationConfig(
        pool_max_sandboxes=row.pool_max_sandboxes,
        pool_idle_timeout_seconds=row.pool_idle_timeout_seconds,
        default_snapshot=row.default_snapshot,
        trigger_enabled=bool(row.trigger_enabled),
        trigger_poll_interval_seconds=row.trigger_poll_interval_seconds,
        execution_timeout_seconds=row.execution_timeout_seconds,
        max_retries=row.max_retries,
    )


def _dump_tags(tags: Iterable[str]) -> str:
    cleaned = sorted({tag.strip() for tag in tags if tag.strip()})
    return json.dumps(cleaned, ensure_ascii=False)


def _load_tags(raw: str) -> tuple[str, ...]:
    parsed = json.loads(raw) if raw else []
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed)


def _to_swarm_view(row: Swarm) -> SwarmView:
    return SwarmView(
        swarm_id=row.swarm_id,
        name=row.name,
        description=row.description,
        status=SwarmStatus(row.status),
        project_ref=row.project_ref,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_task_view(
    row: SwarmTask,
    forward: dict[str, set[str]],
    reverse: dict[str, set[str]],
) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        swarm_id=row.swarm_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        sandbox_ref=row.sandbox_ref,
        depends_on=frozenset(forward.get(row.task_id, ())),
        triggers_after=frozenset(reverse.get(row.task_id, ())),
        result=row.result,
        error=row.error,
        tags=_load_tags(row.tags_json),
        retry_count=row.retry_count,
        attempt=row.attempt,
        sequence=row.sequence,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=to_utc_aware_optional(row.started_at),
        completed_at=to_utc_aware_optional(row.completed_at),
        retry_after=to_utc_aware_optional(row.retry_after),
    )


def _to_sandbox_view(row: Sandbox) -> SandboxView:
    return SandboxView(
        sandbox_id=row.sandbox_id,
        provider_ref=row.provider_ref,
        swarm_id=row.swarm_id,
        snapshot=row.snapshot,
        status=SandboxStatus(row.status),
        current_task_ref=row.current_task_ref,
        created_at=to_utc_aware(row.created_at),
        last_used_at=to_utc_aware_optional(row.last_used_at),
        destroyed_at=to_utc_aware_optional(row.destroyed_at),
    )
