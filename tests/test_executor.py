from __future__ import annotations

import threading
from dataclasses import replace

import allure
from conftest import Runtime, Script

from swarm_engine.config import AgentSettings
from swarm_engine.orchestrator.executor import (
    build_agent_command,
    build_agent_env,
    build_task_prompt,
)
from swarm_engine.orchestrator.models import (
    FailureClass,
    OrchestrationConfig,
    OutcomeKind,
    RetryDecision,
    SandboxStatus,
    SandboxView,
    TaskStatus,
    TaskView,
)
from swarm_engine.orchestrator.provider.base import SandboxNotFoundError

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Task Executor"),
]

_SECRET = "sk-ant-test-secret-value"


def _dispatch(
    runtime: Runtime,
    title: str,
    *,
    description: str = "",
    tags: tuple[str, ...] = (),
) -> tuple[TaskView, SandboxView, OrchestrationConfig]:
    swarm = runtime.swarm()
    task = runtime.task(swarm, title, description=description, tags=tags)
    config = runtime.repository.get_config()
    sandbox = runtime.pool.acquire(
        swarm.swarm_id,
        config.default_snapshot,
        task_id=task.task_id,
        config=config,
    )
    assert isinstance(sandbox, SandboxView)
    started = runtime.repository.start_task(task_id=task.task_id, sandbox_id=sandbox.sandbox_id)
    assert started is not None
    return started, sandbox, config


def _sandbox_status(runtime: Runtime, sandbox: SandboxView) -> SandboxStatus:
    current = runtime.repository.get_sandbox(sandbox.sandbox_id)
    assert current is not None
    return current.status


def test_successful_run_stores_result_and_logs(runtime: Runtime) -> None:
    runtime.provider.script(
        "build",
        Script(lines=("SUMMARY: built", "FILES: dist/app"), stderr=("warning: cache",)),
    )
    task, sandbox, config = _dispatch(runtime, "build")

    assert runtime.executor.run(task, sandbox, config=config) == RetryDecision.COMPLETED

    stored = runtime.repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == "SUMMARY: built\nFILES: dist/app"
    logs = runtime.repository.list_task_logs(task.task_id)
    assert [(log.attempt, log.seq, log.stream, log.line) for log in logs] == [
        (1, 1, "stdout", "SUMMARY: built"),
        (1, 2, "stdout", "FILES: dist/app"),
        (1, 3, "stderr", "warning: cache"),
    ]
    assert _sandbox_status(runtime, sandbox) == SandboxStatus.IDLE


def test_non_zero_exit_requeues_with_output_tail(runtime: Runtime) -> None:
    runtime.provider.script("lint", Script(lines=("E501 line too long",), exit_code=2))
    task, sandbox, config = _dispatch(runtime, "lint")

    assert runtime.executor.run(task, sandbox, config=config) == RetryDecision.REQUEUE

    stored = runtime.repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PENDING
    assert stored.retry_count == 1
    assert stored.error == "Agent exited with code 2: E501 line too long"
    assert _sandbox_status(runtime, sandbox) == SandboxStatus.IDLE


def test_failure_event_records_the_classifier_rule(runtime: Runtime) -> None:
    runtime.provider.script("tests", Script(lines=("3 failed",), exit_code=1))
    task, sandbox, config = _dispatch(runtime, "tests")

    runtime.executor.run(task, sandbox, config=config)

    details = runtime.repository.get_task_details(task.task_id)
    assert details is not None
    event = details.events[-1]
    assert event.event_type == "retry_scheduled"
    assert event.details["classifier_version"] == 1
    assert event.details["matched_rule"] == "non_zero_exit"
    assert event.details["failure_class"] == "agent_exit"
    assert event.details["exit_code"] == 1


def test_secrets_are_redacted_from_stored_errors(runtime: Runtime) -> None:
    runtime.provider.script("leak", Script(lines=(f"using key {_SECRET}",), exit_code=1))
    task, sandbox, config = _dispatch(runtime, "leak")

    runtime.executor.run(task, sandbox, config=config)

    stored = runtime.repository.get_task(task.task_id)
    assert stored is not None
    assert stored.error is not None
    assert _SECRET not in stored.error
    assert "[redacted]" in stored.error


def test_execution_timeout_aborts_the_command(runtime: Runtime) -> None:
    runtime.provider.script("hang", Script(lines=("starting",), block=True))
    task, sandbox, _ = _dispatch(runtime, "hang")

    outcome = runtime.executor.execute(task, sandbox, threading.Event(), timeout_seconds=0.3)

    assert outcome.kind == OutcomeKind.TIMEOUT
    assert outcome.failure_class == FailureClass.TIMEOUT
    assert outcome.duration_seconds >= 0.3
    assert runtime.provider.cancelled == [sandbox.provider_ref]
    assert not outcome.sandbox_lost


def test_timeout_without_confirmed_abort_gives_up_the_sandbox(runtime: Runtime) -> None:
    runtime.provider.can_abort = False
    runtime.provider.script("hang", Script(block=True))
    task, sandbox, _ = _dispatch(runtime, "hang")

    outcome = runtime.executor.execute(task, sandbox, threading.Event(), timeout_seconds=0.2)

    assert outcome.kind == OutcomeKind.TIMEOUT
    assert outcome.sandbox_lost
    assert runtime.provider.cancelled == [sandbox.provider_ref]


def test_timeout_exit_code_is_classified_as_timeout(runtime: Runtime) -> None:
    runtime.provider.script("slow", Script(exit_code=124))
    task, sandbox, _ = _dispatch(runtime, "slow")

    outcome = runtime.executor.execute(task, sandbox, threading.Event(), timeout_seconds=5)

    assert outcome.kind == OutcomeKind.TIMEOUT
    assert outcome.exit_code == 124


def test_cancel_event_stops_the_attempt(runtime: Runtime) -> None:
    runtime.provider.script("long", Script(block=True))
    task, sandbox, _ = _dispatch(runtime, "long")
    cancel_event = threading.Event()
    timer = threading.Timer(0.1, cancel_event.set)
    timer.start()

    outcome = runtime.executor.execute(task, sandbox, cancel_event, timeout_seconds=10)
    timer.join()

    assert outcome.kind == OutcomeKind.CANCELLED
    assert runtime.provider.cancelled == [sandbox.provider_ref]


def test_store_cancellation_is_noticed_while_running(runtime: Runtime) -> None:
    runtime.provider.script("watched", Script(block=True))
    task, sandbox, config = _dispatch(runtime, "watched")
    timer = threading.Timer(0.1, runtime.repository.cancel_task, args=(task.task_id,))
    timer.start()

    decision = runtime.executor.run(task, sandbox, config=config)
    timer.join()

    assert decision is None
    assert runtime.status(task) == TaskStatus.CANCELLED
    assert _sandbox_status(runtime, sandbox) == SandboxStatus.IDLE


def test_cancelled_command_that_keeps_running_destroys_the_sandbox(runtime: Runtime) -> None:
    runtime.provider.can_abort = False
    runtime.provider.script("stubborn", Script(block=True))
    task, sandbox, config = _dispatch(runtime, "stubborn")
    timer = threading.Timer(0.1, runtime.repository.cancel_task, args=(task.task_id,))
    timer.start()

    decision = runtime.executor.run(task, sandbox, config=config)
    timer.join()

    assert decision is None
    assert runtime.status(task) == TaskStatus.CANCELLED
    assert runtime.provider.cancelled == [sandbox.provider_ref]
    assert runtime.provider.destroyed == [sandbox.provider_ref]
    assert _sandbox_status(runtime, sandbox) == SandboxStatus.DESTROYED


def test_lost_sandbox_is_destroyed_after_the_attempt(runtime: Runtime) -> None:
    runtime.provider.script("vanished", Script(error=SandboxNotFoundError("fake-1")))
    task, sandbox, config = _dispatch(runtime, "vanished")

    assert runtime.executor.run(task, sandbox, config=config) == RetryDecision.REQUEUE

    stored = runtime.repository.get_task(task.task_id)
    assert stored is not None
    assert stored.error == "Provider error: Sandbox not found: fake-1"
    assert _sandbox_status(runtime, sandbox) == SandboxStatus.DESTROYED
    details = runtime.repository.get_task_details(task.task_id)
    assert details is not None
    assert details.events[-1].details["failure_class"] == "sandbox_lost"


def test_sandbox_without_provider_ref_fails_the_attempt(runtime: Runtime) -> None:
    task, sandbox, _ = _dispatch(runtime, "detached")

    outcome = runtime.executor.execute(
        task,
        replace(sandbox, provider_ref=None),
        threading.Event(),
        timeout_seconds=5,
    )

    assert outcome.kind == OutcomeKind.FAILURE
    assert outcome.sandbox_lost
    assert runtime.provider.executions == []


def test_logs_are_flushed_in_batches_and_result_is_bounded(runtime: Runtime) -> None:
    lines = tuple(f"{index:03d} " + "x" * 96 for index in range(45))
    runtime.provider.script("noisy", Script(lines=lines))
    task, sandbox, _ = _dispatch(runtime, "noisy")

    outcome = runtime.executor.execute(task, sandbox, threading.Event(), timeout_seconds=5)

    assert outcome.kind == OutcomeKind.SUCCESS
    assert outcome.result is not None
    assert len(outcome.result) <= runtime.executor.engine.result_max_chars
    assert outcome.result.endswith(lines[-1])
    assert not outcome.result.startswith(lines[0])
    logs = runtime.repository.list_task_logs(task.task_id)
    assert [log.seq for log in logs] == list(range(1, 46))
    assert [log.line for log in logs] == list(lines)


def test_command_carries_prompt_and_secrets_travel_as_env(runtime: Runtime) -> None:
    task, sandbox, _ = _dispatch(
        runtime,
        "triage issues",
        description="SKILL: github-triage\nCLI: gh, jq\nLabel every open bug.",
        tags=("ops", "github"),
    )

    runtime.executor.execute(task, sandbox, threading.Event(), timeout_seconds=5)

    [record] = runtime.provider.executions
    assert record.title == "triage issues"
    assert record.command.startswith("claude --yes --print '")
    assert "### Load Skill: github-triage" in record.command
    assert "### Available CLIs: gh, jq" in record.command
    assert "### Details\nLabel every open bug." in record.command
    assert "SKILL:" not in record.command
    assert "Priority: medium | Tags: github, ops" in record.command
    assert _SECRET not in record.command
    assert record.env == {"ANTHROPIC_API_KEY": _SECRET, "CLAUDE_CODE_API_KEY": _SECRET}
    assert record.cwd == "/workspace"


def test_prompt_without_directives_skips_optional_sections(runtime: Runtime) -> None:
    swarm = runtime.swarm()
    task = runtime.task(swarm, "plain")

    prompt = build_task_prompt(task, AgentSettings(workspace_path="/srv/work"))

    assert prompt.startswith("# Agent: Worker\n\n## Task: plain\n")
    assert "Workspace: /srv/work" in prompt
    assert "### Details" not in prompt
    assert "### Load Skill" not in prompt
    assert "### Available CLIs" not in prompt
    assert prompt.rstrip().endswith("- NEXT: Suggested follow-up (if applicable)")


def test_agent_command_quotes_the_prompt() -> None:
    assert build_agent_command("agent run {prompt}", "it's done") == (
        "agent run 'it'\"'\"'s done'"
    )
    assert build_agent_env(AgentSettings()) == {}
