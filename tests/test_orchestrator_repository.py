from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from swarm_engine.config import OrchestrationDefaults
from swarm_engine.errors import InvalidTransitionError, NotFoundError, ValidationError
from swarm_engine.orchestrator.models import (
    ConfigUpdate,
    SwarmCreate,
    SwarmStatus,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from swarm_engine.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Persistent Store"),
]


def _swarm(repository: OrchestratorRepository, name: str = "alpha") -> str:
    return repository.create_swarm(SwarmCreate(name=name)).swarm_id


def _task(
    repository: OrchestratorRepository,
    swarm_id: str,
    title: str,
    *,
    depends_on: tuple[str, ...] = (),
    priority: TaskPriority = TaskPriority.MEDIUM,
) -> str:
    return repository.create_task(
        TaskCreate(swarm_id=swarm_id, title=title, depends_on=depends_on, priority=priority),
    ).task_id


def test_config_is_seeded_and_validated(tmp_path: Path) -> None:
    repository = OrchestratorRepository(
        tmp_path / "config.db",
        defaults=OrchestrationDefaults(pool_max_sandboxes=2, max_retries=1),
    )
    repository.init_schema()
    config = repository.get_config()
    assert config.pool_max_sandboxes == 2
    assert config.max_retries == 1
    assert config.default_snapshot == "swarm-lite-v1"
    assert config.trigger_poll_interval_seconds == 5

    updated = repository.update_config(ConfigUpdate(pool_max_sandboxes=7, trigger_enabled=False))
    assert updated.pool_max_sandboxes == 7
    assert updated.trigger_enabled is False
    assert updated.max_retries == 1

    with pytest.raises(ValidationError):
        repository.update_config(ConfigUpdate(pool_max_sandboxes=0))
    with pytest.raises(ValidationError):
        repository.update_config(ConfigUpdate(trigger_poll_interval_seconds=0))
    with pytest.raises(ValidationError):
        repository.update_config(ConfigUpdate(max_retries=-1))
    assert repository.get_config().pool_max_sandboxes == 7
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = OrchestratorRepository(db_path)
    first.init_schema()
    first.update_config(ConfigUpdate(max_retries=9))
    first.close()

    second = OrchestratorRepository(db_path)
    second.init_schema()
    assert second.get_config().max_retries == 9
    second.close()


def test_swarm_lifecycle_and_stopped_is_terminal(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValidationError):
        repository.create_swarm(SwarmCreate(name="   "))

    swarm_id = _swarm(repository)
    assert repository.set_swarm_status(swarm_id, SwarmStatus.PAUSED).status == SwarmStatus.PAUSED
    assert repository.set_swarm_status(swarm_id, SwarmStatus.ACTIVE).status == SwarmStatus.ACTIVE
    assert repository.set_swarm_status(swarm_id, SwarmStatus.STOPPED).status == SwarmStatus.STOPPED

    with pytest.raises(InvalidTransitionError):
        repository.set_swarm_status(swarm_id, SwarmStatus.ACTIVE)
    with pytest.raises(InvalidTransitionError):
        repository.create_task(TaskCreate(swarm_id=swarm_id, title="late"))
    with pytest.raises(NotFoundError):
        repository.set_swarm_status("missing", SwarmStatus.PAUSED)
    assert [swarm.swarm_id for swarm in repository.list_swarms(status=SwarmStatus.STOPPED)] == [
        swarm_id,
    ]


def test_create_task_maintains_reverse_edges(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    a = _task(repository, swarm_id, "a")
    b = _task(repository, swarm_id, "b", depends_on=(a,))
    c = _task(repository, swarm_id, "c", depends_on=(a, b))

    task_a = repository.get_task(a)
    task_c = repository.get_task(c)
    assert task_a is not None
    assert task_c is not None
    assert task_a.triggers_after == frozenset({b, c})
    assert task_c.depends_on == frozenset({a, b})
    assert task_c.status == TaskStatus.PENDING
    assert task_c.sandbox_ref is None
    assert task_c.sequence > task_a.sequence

    details = repository.get_task_details(c)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_task_create_rejects_bad_dependencies(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    other_swarm = _swarm(repository, "beta")
    foreign = _task(repository, other_swarm, "foreign")

    with pytest.raises(ValidationError):
        _task(repository, swarm_id, "ghostly", depends_on=("ghost",))
    with pytest.raises(ValidationError):
        _task(repository, swarm_id, "cross", depends_on=(foreign,))
    with pytest.raises(NotFoundError):
        _task(repository, "no-such-swarm", "orphan")
    assert repository.list_tasks(swarm_id=swarm_id) == []


def test_update_rejects_cycles_and_replaces_edges(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    a = _task(repository, swarm_id, "a")
    b = _task(repository, swarm_id, "b", depends_on=(a,))
    c = _task(repository, swarm_id, "c", depends_on=(b,))

    with pytest.raises(ValidationError, match="cycle"):
        repository.update_task(a, TaskUpdate(depends_on=(c,)))
    with pytest.raises(ValidationError, match="itself"):
        repository.update_task(a, TaskUpdate(depends_on=(a,)))

    updated = repository.update_task(
        c,
        TaskUpdate(depends_on=(a,), priority=TaskPriority.URGENT, tags=("x", "x", "y")),
    )
    assert updated.depends_on == frozenset({a})
    assert updated.priority == TaskPriority.URGENT
    assert updated.tags == ("x", "y")
    task_b = repository.get_task(b)
    assert task_b is not None
    assert task_b.triggers_after == frozenset()


def test_delete_task_refuses_referenced_and_running(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    a = _task(repository, swarm_id, "a")
    b = _task(repository, swarm_id, "b", depends_on=(a,))

    with pytest.raises(InvalidTransitionError, match="dependency of"):
        repository.delete_task(a)

    # b cannot start while a is pending.
    assert repository.start_task(task_id=b, sandbox_id="sandbox-1") is None
    assert repository.start_task(task_id=a, sandbox_id="sandbox-1") is not None
    with pytest.raises(InvalidTransitionError, match="running"):
        repository.update_task(a, TaskUpdate(title="renamed"))

    repository.delete_task(b)
    assert repository.get_task(b) is None


def test_start_task_is_exactly_once_under_contention(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "contended")
    barrier = threading.Barrier(8)
    results: list[bool] = []
    lock = threading.Lock()

    def _start(index: int) -> None:
        barrier.wait(timeout=5)
        started = repository.start_task(task_id=task_id, sandbox_id=f"sandbox-{index}")
        with lock:
            results.append(started is not None)

    threads = [threading.Thread(target=_start, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert results.count(True) == 1
    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.attempt == 1
    assert task.started_at is not None


def test_terminal_writes_are_rejected_after_cancel(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "cancel-me")
    assert repository.start_task(task_id=task_id, sandbox_id="sandbox-1") is not None

    assert repository.cancel_task(task_id) == TaskStatus.RUNNING
    assert repository.complete_task(task_id=task_id, result="late") is False
    assert repository.fail_task(task_id=task_id, retry_count=1, error="late") is False
    assert repository.requeue_task(task_id=task_id, retry_count=1, error="late") is False

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.CANCELLED
    assert task.sandbox_ref is None
    assert task.error is None
    with pytest.raises(InvalidTransitionError):
        repository.cancel_task(task_id)


def test_manual_retry_resets_counter_and_fields(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "flaky")
    assert repository.start_task(task_id=task_id, sandbox_id="sandbox-1") is not None
    assert repository.fail_task(task_id=task_id, retry_count=4, error="boom") is True

    failed = repository.get_task(task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.completed_at is not None
    assert failed.completed_at >= failed.started_at

    retried = repository.retry_task(task_id)
    assert retried.status == TaskStatus.PENDING
    assert retried.retry_count == 0
    assert retried.error is None
    assert retried.result is None
    assert retried.started_at is None
    assert retried.completed_at is None

    with pytest.raises(InvalidTransitionError):
        repository.retry_task(task_id)
    with pytest.raises(NotFoundError):
        repository.retry_task("missing")


def test_requeue_clears_sandbox_and_keeps_error(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "again")
    assert repository.start_task(task_id=task_id, sandbox_id="sandbox-1") is not None
    assert repository.requeue_task(task_id=task_id, retry_count=1, error="exit 1") is True

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.sandbox_ref is None
    assert task.retry_count == 1
    assert task.error == "exit 1"

    details = repository.get_task_details(task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "dispatched",
        "retry_scheduled",
    ]


def test_provision_failure_is_guarded_by_retry_count(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "unlucky")

    assert repository.record_provision_failure(
        task_id=task_id,
        expected_retry_count=0,
        retry_count=1,
        error="no capacity upstream",
        terminal=False,
    )
    # Stale expectation loses.
    assert not repository.record_provision_failure(
        task_id=task_id,
        expected_retry_count=0,
        retry_count=1,
        error="dup",
        terminal=False,
    )
    assert repository.record_provision_failure(
        task_id=task_id,
        expected_retry_count=1,
        retry_count=2,
        error="still broken",
        terminal=True,
    )
    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.error == "still broken"


def test_task_logs_are_sequenced_per_attempt(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    task_id = _task(repository, swarm_id, "chatty")

    repository.append_task_logs(task_id=task_id, attempt=1, lines=[("stdout", "a"), ("stderr", "b")])
    repository.append_task_logs(task_id=task_id, attempt=1, lines=[("stdout", "c")])
    repository.append_task_logs(task_id=task_id, attempt=2, lines=[("stdout", "d")])
    assert repository.append_task_logs(task_id=task_id, attempt=2, lines=[]) == 0

    first = repository.list_task_logs(task_id, attempt=1)
    assert [(log.seq, log.stream, log.line) for log in first] == [
        (1, "stdout", "a"),
        (2, "stderr", "b"),
        (3, "stdout", "c"),
    ]
    second = repository.list_task_logs(task_id, attempt=2)
    assert [(log.seq, log.line) for log in second] == [(1, "d")]
    tail = repository.list_task_logs(task_id, after_id=first[-1].log_id)
    assert [log.line for log in tail] == ["d"]


def test_delete_swarm_cascades_and_refuses_running(repository: OrchestratorRepository) -> None:
    swarm_id = _swarm(repository)
    a = _task(repository, swarm_id, "a")
    _task(repository, swarm_id, "b", depends_on=(a,))
    assert repository.start_task(task_id=a, sandbox_id="sandbox-1") is not None

    with pytest.raises(InvalidTransitionError):
        repository.delete_swarm(swarm_id)

    repository.cancel_task(a)
    repository.delete_swarm(swarm_id)
    assert repository.get_swarm(swarm_id) is None
    assert repository.list_tasks(swarm_id=swarm_id) == []
    assert repository.get_task(a) is None
