"""CLI entrypoint for swarm-engine."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from swarm_engine import __version__
from swarm_engine.errors import SwarmEngineError
from swarm_engine.orchestrator.controllers import (
    ConfigShowCommand,
    ConfigUpdateCommand,
    EngineRunCommand,
    PoolCommand,
    SandboxDestroyCommand,
    SwarmCliController,
    SwarmCreateCommand,
    SwarmListCommand,
    SwarmMutateCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskLogsCommand,
    TaskMutateCommand,
    TaskUpdateCommand,
)
from swarm_engine.orchestrator.models import ConfigUpdate

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SwarmCliController()

_DB_PATH_HELP = "SQLite DB path."
_SWARM_STATUSES = ["active", "paused", "stopped"]
_TASK_STATUSES = ["pending", "running", "completed", "failed", "cancelled"]
_PRIORITIES = ["low", "medium", "high", "urgent"]


def db_path_option(func: Callable[..., None]) -> Callable[..., None]:
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help=_DB_PATH_HELP,
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="swarm-engine")
def swarm_engine() -> None:
    """Task orchestration engine for agent swarms running in sandboxes."""


# ---------------------------------------------------------------------- swarm


@swarm_engine.group()
def swarm() -> None:
    """Swarm commands."""


@swarm.command("create")
@db_path_option
@click.option("--name", required=True, help="Swarm name.")
@click.option("--description", default="", help="Free-form description.")
@click.option("--project-ref", default=None, help="Optional project reference.")
def swarm_create(
    db_path: Path | None,
    name: str,
    description: str,
    project_ref: str | None,
) -> None:
    """Create an active swarm."""

    _run(
        lambda: CONTROLLER.create_swarm(
            SwarmCreateCommand(
                db_path=db_path,
                name=name,
                description=description,
                project_ref=project_ref,
            ),
        ),
    )


@swarm.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(_SWARM_STATUSES, case_sensitive=False),
    default=None,
    help="Filter by swarm status.",
)
def swarm_list(db_path: Path | None, status: str | None) -> None:
    """List swarms with task counts."""

    _run(lambda: CONTROLLER.list_swarms(SwarmListCommand(db_path=db_path, status=status)))


@swarm.command("pause")
@db_path_option
@click.option("--swarm-id", required=True, help="Swarm id.")
def swarm_pause(db_path: Path | None, swarm_id: str) -> None:
    """Suspend dispatch; running tasks finish normally."""

    _run(lambda: CONTROLLER.pause_swarm(SwarmMutateCommand(db_path=db_path, swarm_id=swarm_id)))


@swarm.command("resume")
@db_path_option
@click.option("--swarm-id", required=True, help="Swarm id.")
def swarm_resume(db_path: Path | None, swarm_id: str) -> None:
    """Resume dispatch of a paused swarm."""

    _run(lambda: CONTROLLER.resume_swarm(SwarmMutateCommand(db_path=db_path, swarm_id=swarm_id)))


@swarm.command("stop")
@db_path_option
@click.option("--swarm-id", required=True, help="Swarm id.")
def swarm_stop(db_path: Path | None, swarm_id: str) -> None:
    """Stop a swarm for good. Its tasks are frozen."""

    _run(lambda: CONTROLLER.stop_swarm(SwarmMutateCommand(db_path=db_path, swarm_id=swarm_id)))


@swarm.command("delete")
@db_path_option
@click.option("--swarm-id", required=True, help="Swarm id.")
def swarm_delete(db_path: Path | None, swarm_id: str) -> None:
    """Destroy the swarm's sandboxes and delete it with all tasks."""

    _run(lambda: CONTROLLER.delete_swarm(SwarmMutateCommand(db_path=db_path, swarm_id=swarm_id)))


# ----------------------------------------------------------------------- task


@swarm_engine.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@db_path_option
@click.option("--swarm-id", required=True, help="Swarm id.")
@click.option("--title", required=True, help="Task title.")
@click.option(
    "--description",
    default="",
    help="Task description. `SKILL: name` and `CLI: a, b` lines become directives.",
)
@click.option(
    "--priority",
    type=click.Choice(_PRIORITIES, case_sensitive=False),
    default="medium",
    show_default=True,
    help="Dispatch priority.",
)
@click.option("--depends-on", "depends_on", multiple=True, help="Dependency task id. Repeatable.")
@click.option("--tag", "tags", multiple=True, help="Tag. Repeatable.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    swarm_id: str,
    title: str,
    description: str,
    priority: str,
    depends_on: tuple[str, ...],
    tags: tuple[str, ...],
) -> None:
    """Create a pending task."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                swarm_id=swarm_id,
                title=title,
                description=description,
                priority=priority,
                depends_on=depends_on,
                tags=tags,
            ),
        ),
    )


@task.command("update")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--title", default=None, help="New title.")
@click.option("--description", default=None, help="New description.")
@click.option(
    "--priority",
    type=click.Choice(_PRIORITIES, case_sensitive=False),
    default=None,
    help="New priority.",
)
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Replace dependencies with these task ids. Repeatable.",
)
@click.option("--clear-depends", is_flag=True, help="Remove all dependencies.")
@click.option("--tag", "tags", multiple=True, help="Replace tags. Repeatable.")
def task_update(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    title: str | None,
    description: str | None,
    priority: str | None,
    depends_on: tuple[str, ...],
    clear_depends: bool,
    tags: tuple[str, ...],
) -> None:
    """Edit a task that is not running."""

    if clear_depends and depends_on:
        raise click.UsageError("--clear-depends cannot be combined with --depends-on.")
    dependencies: tuple[str, ...] | None = depends_on or None
    if clear_depends:
        dependencies = ()
    _run(
        lambda: CONTROLLER.update_task(
            TaskUpdateCommand(
                db_path=db_path,
                task_id=task_id,
                title=title,
                description=description,
                priority=priority,
                depends_on=dependencies,
                tags=tags or None,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option("--swarm-id", default=None, help="Filter by swarm id.")
@click.option(
    "--status",
    type=click.Choice(_TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Filter by task status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(db_path: Path | None, swarm_id: str | None, status: str | None, limit: int) -> None:
    """List tasks in arrival order."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, swarm_id=swarm_id, status=status, limit=limit),
        ),
    )


@task.command("inspect")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _run(lambda: CONTROLLER.inspect_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("retry")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def task_retry(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a failed or cancelled task."""

    _run(lambda: CONTROLLER.retry_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("cancel")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending or running task."""

    _run(lambda: CONTROLLER.cancel_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("delete")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def task_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task nothing depends on."""

    _run(lambda: CONTROLLER.delete_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("logs")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--attempt", type=click.IntRange(min=1), default=None, help="Only this attempt.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max lines to print.")
def task_logs(db_path: Path | None, task_id: str, attempt: int | None, limit: int | None) -> None:
    """Print captured output lines of a task."""

    _run(
        lambda: CONTROLLER.task_logs(
            TaskLogsCommand(db_path=db_path, task_id=task_id, attempt=attempt, limit=limit),
        ),
    )


# ----------------------------------------------------------------------- pool


@swarm_engine.group()
def pool() -> None:
    """Sandbox pool commands."""


@pool.command("status")
@db_path_option
def pool_status(db_path: Path | None) -> None:
    """Show pool capacity and every sandbox."""

    _run(lambda: CONTROLLER.pool_status(PoolCommand(db_path=db_path)))


@pool.command("cleanup")
@db_path_option
def pool_cleanup(db_path: Path | None) -> None:
    """Destroy idle sandboxes past the idle timeout."""

    _run(lambda: CONTROLLER.cleanup_idle(PoolCommand(db_path=db_path)))


@pool.command("destroy")
@db_path_option
@click.option("--sandbox-id", required=True, help="Sandbox id.")
def pool_destroy(db_path: Path | None, sandbox_id: str) -> None:
    """Destroy one sandbox regardless of its state."""

    _run(
        lambda: CONTROLLER.destroy_sandbox(
            SandboxDestroyCommand(db_path=db_path, sandbox_id=sandbox_id),
        ),
    )


# --------------------------------------------------------------------- config


@swarm_engine.group()
def config() -> None:
    """Orchestration config commands."""


@config.command("show")
@db_path_option
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def config_show(db_path: Path | None, output_format: str) -> None:
    """Show the shared orchestration config."""

    _run(
        lambda: CONTROLLER.show_config(
            ConfigShowCommand(db_path=db_path, output_format=output_format.lower()),
        ),
    )


@config.command("set")
@db_path_option
@click.option("--pool-max-sandboxes", type=int, default=None, help="Pool capacity.")
@click.option("--pool-idle-timeout-seconds", type=int, default=None, help="Idle eviction age.")
@click.option("--default-snapshot", default=None, help="Snapshot for new sandboxes.")
@click.option(
    "--trigger-enabled/--trigger-disabled",
    default=None,
    help="Enable or disable automatic dispatch.",
)
@click.option("--trigger-poll-interval-seconds", type=int, default=None, help="Cycle interval.")
@click.option("--execution-timeout-seconds", type=int, default=None, help="Per-attempt timeout.")
@click.option("--max-retries", type=int, default=None, help="Automatic retries per task.")
def config_set(  # noqa: PLR0913
    db_path: Path | None,
    pool_max_sandboxes: int | None,
    pool_idle_timeout_seconds: int | None,
    default_snapshot: str | None,
    trigger_enabled: bool | None,
    trigger_poll_interval_seconds: int | None,
    execution_timeout_seconds: int | None,
    max_retries: int | None,
) -> None:
    """Update the shared orchestration config; the engine picks it up next cycle."""

    _run(
        lambda: CONTROLLER.update_config(
            ConfigUpdateCommand(
                db_path=db_path,
                changes=ConfigUpdate(
                    pool_max_sandboxes=pool_max_sandboxes,
                    pool_idle_timeout_seconds=pool_idle_timeout_seconds,
                    default_snapshot=default_snapshot,
                    trigger_enabled=trigger_enabled,
                    trigger_poll_interval_seconds=trigger_poll_interval_seconds,
                    execution_timeout_seconds=execution_timeout_seconds,
                    max_retries=max_retries,
                ),
            ),
        ),
    )


# --------------------------------------------------------------------- engine


@swarm_engine.group()
def engine() -> None:
    """Trigger engine commands."""


@engine.command("run")
@db_path_option
@click.option("--once", is_flag=True, help="Run a single cycle and wait for its attempts.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root log level.",
)
def engine_run(db_path: Path | None, once: bool, log_level: str) -> None:
    """Run the orchestration loop until it is stopped (Ctrl+C) or halts."""

    _setup_logging(log_level)
    _run(lambda: CONTROLLER.run_engine(EngineRunCommand(db_path=db_path, once=once)))


@engine.command("stats")
@db_path_option
def engine_stats(db_path: Path | None) -> None:
    """Show provider reachability and task counts of active swarms."""

    _run(lambda: CONTROLLER.engine_stats(PoolCommand(db_path=db_path)))


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _run(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except SwarmEngineError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    swarm_engine()
