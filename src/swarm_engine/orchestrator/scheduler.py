"""Dependency scheduler: picks the next runnable task of one swarm."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from datetime import datetime

from swarm_engine.orchestrator.models import BlockedTask, TaskStatus, TaskView

MISSING_DEPENDENCY = "missing"

_BLOCKING_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def is_runnable(task: TaskView, statuses: Mapping[str, TaskStatus]) -> bool:
    """A pending task is runnable iff every dependency is completed."""

    if task.status != TaskStatus.PENDING:
        return False
    return all(statuses.get(dep_id) == TaskStatus.COMPLETED for dep_id in task.depends_on)


def is_due(task: TaskView, now: datetime) -> bool:
    """False while a requeued task is still backing off."""

    return task.retry_after is None or task.retry_after <= now


def dispatch_order_key(task: TaskView) -> tuple[int, object, int]:
    """Priority first (urgent..low), then arrival order."""

    return (-task.priority.rank, task.created_at, task.sequence)


def select_next(
    tasks: Iterable[TaskView],
    statuses: Mapping[str, TaskStatus],
    *,
    exclude: Collection[str] = (),
    now: datetime | None = None,
) -> TaskView | None:
    """Return the highest-priority, oldest runnable task, or None.

    ``statuses`` must cover every task the candidates depend on; an id absent
    from it is treated as not completed.
    With ``now`` given, tasks whose retry backoff has not elapsed are skipped.
    """

    best: TaskView | None = None
    for task in tasks:
        if task.task_id in exclude or not is_runnable(task, statuses):
            continue
        if now is not None and not is_due(task, now):
            continue
        if best is None or dispatch_order_key(task) < dispatch_order_key(best):
            best = task
    return best


def find_blocked(
    tasks: Iterable[TaskView],
    statuses: Mapping[str, TaskStatus],
) -> list[BlockedTask]:
    """Pending tasks that depend on a failed, cancelled or missing task.

    Such tasks are never selected. They are reported rather than cancelled;
    a manual retry of the dependency unblocks them.
    """

    blocked: list[BlockedTask] = []
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        blocking: dict[str, str] = {}
        for dep_id in sorted(task.depends_on):
            status = statuses.get(dep_id)
            if status is None:
                blocking[dep_id] = MISSING_DEPENDENCY
            elif status in _BLOCKING_STATUSES:
                blocking[dep_id] = status.value
        if blocking:
            blocked.append(BlockedTask(task_id=task.task_id, blocking=blocking))
    return blocked
