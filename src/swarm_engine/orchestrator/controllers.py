"""Controllers for swarm-engine CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from swarm_engine.config import Settings
from swarm_engine.errors import ValidationError
from swarm_engine.orchestrator.executor import TaskExecutor
from swarm_engine.orchestrator.models import (
    ConfigUpdate,
    OrchestrationConfig,
    SwarmCreate,
    SwarmStatus,
    SwarmView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from swarm_engine.orchestrator.pool import PoolManager
from swarm_engine.orchestrator.provider.base import SandboxProvider
from swarm_engine.orchestrator.provider.factory import build_provider
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.orchestrator.retry import RetryPolicy
from swarm_engine.orchestrator.services import SwarmService
from swarm_engine.orchestrator.trigger import EngineState, TriggerEngine, TriggerStats

_ENGINE_WATCH_SECONDS = 0.5


@dataclass(slots=True)
class SwarmCreateCommand:
    """CLI input for swarm creation."""

    db_path: Path | None
    name: str
    description: str
    project_ref: str | None


@dataclass(slots=True)
class SwarmListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class SwarmMutateCommand:
    """CLI input for pause/resume/stop/delete."""

    db_path: Path | None
    swarm_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    swarm_id: str
    title: str
    description: str
    priority: str
    depends_on: tuple[str, ...]
    tags: tuple[str, ...]


@dataclass(slots=True)
class TaskUpdateCommand:
    """CLI input for task edits; unset options keep current values."""

    db_path: Path | None
    task_id: str
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    depends_on: tuple[str, ...] | None = None
    tags: tuple[str, ...] | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    swarm_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for inspect/retry/cancel/delete."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskLogsCommand:
    db_path: Path | None
    task_id: str
    attempt: int | None
    limit: int | None


@dataclass(slots=True)
class PoolCommand:
    db_path: Path | None


@dataclass(slots=True)
class SandboxDestroyCommand:
    db_path: Path | None
    sandbox_id: str


@dataclass(slots=True)
class ConfigShowCommand:
    db_path: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class ConfigUpdateCommand:
    db_path: Path | None
    changes: ConfigUpdate


@dataclass(slots=True)
class EngineRunCommand:
    """CLI input for the trigger engine."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class EngineRuntime:
    repository: OrchestratorRepository
    provider: SandboxProvider
    pool: PoolManager
    executor: TaskExecutor
    engine: TriggerEngine


class SwarmCliController:
    """Coordinates swarm, task, pool, config and engine CLI operations."""

    # ---------------------------------------------------------------- swarms

    def create_swarm(self, command: SwarmCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            swarm = SwarmService(repository=repository).create_swarm(
                SwarmCreate(
                    name=command.name,
                    description=command.description,
                    project_ref=command.project_ref,
                ),
            )
        return [f"Swarm created: swarm_id={swarm.swarm_id} name={swarm.name}"]

    def list_swarms(self, command: SwarmListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_swarm_status(command.status)
        with _repository(settings) as repository:
            swarms = repository.list_swarms(status=status)
            counts = {
                swarm.swarm_id: repository.count_tasks_by_status(swarm_ids=[swarm.swarm_id])
                for swarm in swarms
            }
        lines = [f"Swarms: {len(swarms)}"]
        for swarm in swarms:
            swarm_counts = counts[swarm.swarm_id]
            lines.append(
                f"  {swarm.swarm_id} name={swarm.name} status={swarm.status.value} "
                f"pending={swarm_counts[TaskStatus.PENDING]} "
                f"running={swarm_counts[TaskStatus.RUNNING]} "
                f"completed={swarm_counts[TaskStatus.COMPLETED]} "
                f"failed={swarm_counts[TaskStatus.FAILED]}",
            )
        return lines

    def pause_swarm(self, command: SwarmMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            swarm = SwarmService(repository=repository).pause_swarm(command.swarm_id)
        return [_swarm_status_line(swarm)]

    def resume_swarm(self, command: SwarmMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            swarm = SwarmService(repository=repository).resume_swarm(command.swarm_id)
        return [_swarm_status_line(swarm)]

    def stop_swarm(self, command: SwarmMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            swarm = SwarmService(repository=repository).stop_swarm(command.swarm_id)
        return [_swarm_status_line(swarm)]

    def delete_swarm(self, command: SwarmMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            service = SwarmService(repository=runtime.repository, pool=runtime.pool)
            destroyed = service.delete_swarm(command.swarm_id)
        return [f"Swarm deleted: {command.swarm_id} (sandboxes destroyed: {len(destroyed)})"]

    # ----------------------------------------------------------------- tasks

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        priority = _parse_priority(command.priority) or TaskPriority.MEDIUM
        with _repository(settings) as repository:
            task = SwarmService(repository=repository).create_task(
                TaskCreate(
                    swarm_id=command.swarm_id,
                    title=command.title,
                    description=command.description,
                    priority=priority,
                    depends_on=command.depends_on,
                    tags=command.tags,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} swarm_id={task.swarm_id} "
            f"priority={task.priority.value} status={task.status.value}",
        ]

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        changes = TaskUpdate(
            title=command.title,
            description=command.description,
            priority=_parse_priority(command.priority),
            depends_on=command.depends_on,
            tags=command.tags,
        )
        if changes.is_empty():
            raise ValidationError("Nothing to update: pass at least one option.")
        with _repository(settings) as repository:
            task = SwarmService(repository=repository).update_task(command.task_id, changes)
        return [f"Task updated: {task.task_id}", *_task_lines(task)]

    def delete_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            SwarmService(repository=repository).delete_task(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_task_status(command.status)
        with _repository(settings) as repository:
            tasks = SwarmService(repository=repository).list_tasks(
                swarm_id=command.swarm_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} priority={task.priority.value} "
                f"retries={task.retry_count} depends_on={','.join(sorted(task.depends_on)) or '-'} "
                f"title={task.title}",
            )
        return lines

    def inspect_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = SwarmService(repository=repository).inspect_task(command.task_id)
        lines = _task_lines(details.task)
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            SwarmService(repository=repository).retry_task(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            previous = SwarmService(repository=repository).cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id} (was {previous.value})"]

    def task_logs(self, command: TaskLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            logs = SwarmService(repository=repository).task_logs(
                command.task_id,
                attempt=command.attempt,
                limit=command.limit,
            )
        if not logs:
            return [f"No log lines for task {command.task_id}"]
        return [f"[{log.attempt}:{log.seq}] {log.stream}: {log.line}" for log in logs]

    # ------------------------------------------------------------------ pool

    def pool_status(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            status = SwarmService(repository=runtime.repository, pool=runtime.pool).pool_status()
        stats = status.stats
        lines = [
            f"Pool: max={status.config.pool_max_sandboxes} "
            f"idle_timeout={status.config.pool_idle_timeout_seconds}s "
            f"snapshot={status.config.default_snapshot}",
            f"Sandboxes: total={stats.total} busy={stats.busy} idle={stats.idle} "
            f"destroyed={stats.destroyed}",
        ]
        for info in status.sandboxes:
            sandbox = info.sandbox
            idle = f"{info.idle_seconds:.0f}s" if info.idle_seconds is not None else "-"
            lines.append(
                f"  {sandbox.sandbox_id} status={sandbox.status.value} "
                f"swarm={sandbox.swarm_id or '-'} task={sandbox.current_task_ref or '-'} "
                f"provider_ref={sandbox.provider_ref or '-'} idle={idle}",
            )
        return lines

    def cleanup_idle(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            destroyed = SwarmService(
                repository=runtime.repository,
                pool=runtime.pool,
            ).cleanup_idle()
        return [f"Idle sandboxes destroyed: {len(destroyed)}", *(f"  {sid}" for sid in destroyed)]

    def destroy_sandbox(self, command: SandboxDestroyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            destroyed = SwarmService(
                repository=runtime.repository,
                pool=runtime.pool,
            ).destroy_sandbox(command.sandbox_id)
        if not destroyed:
            return [f"Sandbox already destroyed: {command.sandbox_id}"]
        return [f"Sandbox destroyed: {command.sandbox_id}"]

    # ---------------------------------------------------------------- config

    def show_config(self, command: ConfigShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            config = repository.get_config()
        return _config_lines(config, output_format=command.output_format)

    def update_config(self, command: ConfigUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            config = SwarmService(repository=repository).update_config(command.changes)
        return ["Config updated", *_config_lines(config, output_format="table")]

    # ---------------------------------------------------------------- engine

    def run_engine(self, command: EngineRunCommand) -> list[str]:
        """Run one cycle (``once``) or the background loop until it stops."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_engine()
        with _runtime(settings) as runtime:
            engine = runtime.engine
            if command.once:
                engine.recover_orphans()
                try:
                    summary = engine.run_cycle()
                    engine.wait_idle()
                finally:
                    engine.stop()
                stats = engine.stats()
                return [
                    f"Cycle summary: enabled={summary.enabled} swarms={summary.swarms} "
                    f"dispatched={summary.dispatched} capacity_waits={summary.capacity_waits} "
                    f"provision_failures={summary.provision_failures} swept={summary.swept} "
                    f"blocked={summary.blocked}",
                    _stats_line(stats),
                ]

            if not engine.start():
                return ["Trigger engine not started: triggers are disabled in config."]
            try:
                while engine.state == EngineState.RUNNING:
                    time.sleep(_ENGINE_WATCH_SECONDS)
            finally:
                engine.stop()
            health = engine.health()
            lines = [f"Trigger engine stopped: healthy={health.healthy}"]
            if health.reason:
                lines.append(f"Reason: {health.reason}")
            lines.append(_stats_line(engine.stats()))
            return lines

    def engine_stats(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            healthy = runtime.provider.health()
            stats = runtime.engine.stats()
        return [
            f"Provider: {runtime.provider.name} reachable={'yes' if healthy else 'no'}",
            _stats_line(stats),
        ]


def _parse_swarm_status(value: str | None) -> SwarmStatus | None:
    if value is None:
        return None
    return _parse_enum(SwarmStatus, value)


def _parse_task_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return _parse_enum(TaskStatus, value)


def _parse_priority(value: str | None) -> TaskPriority | None:
    if value is None:
        return None
    return _parse_enum(TaskPriority, value)


def _parse_enum(enum_type: type[Enum], value: str) -> Any:
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(str(item.value) for item in enum_type)
        raise ValidationError(
            f"Unsupported {enum_type.__name__} value: {value!r}. Expected one of: {allowed}.",
        ) from error


def _swarm_status_line(swarm: SwarmView) -> str:
    return f"Swarm {swarm.swarm_id}: status={swarm.status.value}"


def _task_lines(task: TaskView) -> list[str]:
    return [
        f"Task: {task.task_id}",
        f"Swarm: {task.swarm_id}",
        f"Title: {task.title}",
        f"Status: {task.status.value}",
        f"Priority: {task.priority.value}",
        f"Depends on: {', '.join(sorted(task.depends_on)) or '-'}",
        f"Triggers after: {', '.join(sorted(task.triggers_after)) or '-'}",
        f"Tags: {', '.join(task.tags) or '-'}",
        f"Retries: {task.retry_count} Attempts: {task.attempt}",
        f"Retry after: {task.retry_after.isoformat() if task.retry_after else '-'}",
        f"Sandbox: {task.sandbox_ref or '-'}",
        f"Error: {task.error or '-'}",
        f"Result: {task.result or '-'}",
    ]


def _config_lines(config: OrchestrationConfig, *, output_format: str) -> list[str]:
    if output_format == "json":
        return [json.dumps(asdict(config), indent=2, ensure_ascii=False)]
    return [f"{key}={value}" for key, value in asdict(config).items()]


def _stats_line(stats: TriggerStats) -> str:
    return (
        f"Engine stats: running={stats.is_running} processing={stats.processing_count} "
        f"pending={stats.tasks_pending} in_flight={stats.tasks_running} "
        f"completed={stats.tasks_completed} failed={stats.tasks_failed} "
        f"cancelled={stats.tasks_cancelled}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        defaults=settings.defaults,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[EngineRuntime]:
    provider = build_provider(settings)
    try:
        with _repository(settings) as repository:
            pool = PoolManager(repository, provider)
            executor = TaskExecutor(
                repository,
                provider,
                pool,
                RetryPolicy(
                    repository,
                    base_delay_seconds=settings.engine.retry_base_delay_seconds,
                    max_delay_seconds=settings.engine.retry_max_delay_seconds,
                ),
                agent=settings.agent,
                engine=settings.engine,
            )
            engine = TriggerEngine(
                repository,
                pool,
                executor,
                shutdown_wait_seconds=settings.engine.shutdown_wait_seconds,
            )
            yield EngineRuntime(
                repository=repository,
                provider=provider,
                pool=pool,
                executor=executor,
                engine=engine,
            )
    finally:
        provider.close()
