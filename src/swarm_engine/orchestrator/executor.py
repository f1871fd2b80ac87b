"""Task executor: drive one task attempt inside one sandbox."""

from __future__ import annotations

import logging
import queue
import shlex
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from swarm_engine.config import AgentSettings, EngineSettings
from swarm_engine.errors import ExecutionFailure, ExecutionTimeout
from swarm_engine.orchestrator.directives import parse_directives
from swarm_engine.orchestrator.failure_classifier import (
    FailureClassification,
    classify_exit,
    classify_provider_error,
)
from swarm_engine.orchestrator.models import (
    ExecutionOutcome,
    FailureClass,
    OrchestrationConfig,
    OutcomeKind,
    RetryDecision,
    SandboxView,
    TaskStatus,
    TaskView,
)
from swarm_engine.orchestrator.pool import PoolManager
from swarm_engine.orchestrator.provider.base import (
    STREAM_STDOUT,
    LogLine,
    ProviderError,
    SandboxProvider,
)
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.orchestrator.retry import RetryPolicy
from swarm_engine.orchestrator.sanitization import sanitize_text, secret_values

logger = logging.getLogger(__name__)

_ERROR_TAIL_LINES = 20
_STREAM_DONE = object()


def build_task_prompt(task: TaskView, agent: AgentSettings) -> str:
    """Render the worker prompt. Credentials never appear here; they travel as env."""

    directives = parse_directives(task.description)
    parts = [
        "# Agent: Worker\n\n",
        f"## Task: {task.title}\n"
        f"Priority: {task.priority.value} | Tags: {', '.join(task.tags)}\n"
        f"Workspace: {agent.workspace_path}\n"
        "Mode: TASK EXECUTION - Complete autonomously\n\n",
    ]
    if directives.description:
        parts.append(f"### Details\n{directives.description}\n\n")
    parts.append(
        "## Setup\n"
        "**Tools:** Node.js 22, Python 3, Git, curl, jq. Standard dev environment.\n"
        f"**Skills:** `ls {agent.skills_path}/` | **CLIs:** `ls {agent.cli_docs_path}/`\n"
        "**Note:** API credentials are automatically available in environment.\n\n",
    )
    if directives.skill:
        parts.append(
            f"### Load Skill: {directives.skill}\n"
            "```bash\n"
            f"cat {agent.skills_path}/{directives.skill}/SKILL.md\n"
            "```\n"
            "Follow the skill instructions carefully.\n\n",
        )
    if directives.clis:
        parts.append(
            f"### Available CLIs: {', '.join(directives.clis)}\n"
            f"Check CLI documentation at `{agent.cli_docs_path}/<cli-name>/` for usage.\n\n",
        )
    parts.append(
        "## Think First\n"
        '1. **SUCCESS**: What defines "done" for this task?\n'
        "2. **STEPS**: What sequence achieves this?\n"
        "3. **RISKS**: What could fail? How to handle?\n\n"
        "## Execute\n"
        "- Complete autonomously - proceed with reasonable assumptions\n"
        "- Make reasonable assumptions, note them in output\n"
        "- If blocked, try alternative approach before reporting failure\n\n"
        "## Output Rules\n"
        "**ALWAYS filter outputs to save context:**\n"
        "- `command | head -20` or `| tail -20` for long outputs\n"
        "- `curl ... | jq '.field'` to extract specific data\n"
        "- **Max 50 lines** per command output\n"
        "- Summarize all results concisely\n\n"
        "**Response format:**\n"
        "- SUMMARY: 1-2 sentences of what was done\n"
        "- FILES: Created/modified paths (if any)\n"
        "- ISSUES: Problems encountered (if any)\n"
        "- NEXT: Suggested follow-up (if applicable)\n",
    )
    return "".join(parts)


def build_agent_command(template: str, prompt: str) -> str:
    """Substitute the shell-quoted prompt into the agent command template."""

    return template.replace("{prompt}", shlex.quote(prompt))


def build_agent_env(agent: AgentSettings) -> dict[str, str]:
    if not agent.anthropic_api_key:
        return {}
    return {
        "ANTHROPIC_API_KEY": agent.anthropic_api_key,
        "CLAUDE_CODE_API_KEY": agent.anthropic_api_key,
    }


@dataclass(slots=True)
class _AttemptOutput:
    """Bounded stdout/stderr buffers of one attempt."""

    result_max_chars: int
    stdout: deque[str] = field(default_factory=deque)
    stdout_chars: int = 0
    tail: deque[str] = field(default_factory=lambda: deque(maxlen=_ERROR_TAIL_LINES))

    def add(self, line: LogLine) -> None:
        self.tail.append(line.text)
        if line.stream != STREAM_STDOUT:
            return
        self.stdout.append(line.text)
        self.stdout_chars += len(line.text) + 1
        while self.stdout_chars > self.result_max_chars and len(self.stdout) > 1:
            self.stdout_chars -= len(self.stdout.popleft()) + 1

    def result(self) -> str:
        text = "\n".join(self.stdout).strip()
        return text[-self.result_max_chars :]

    def tail_text(self) -> str:
        return "\n".join(self.tail)


class TaskExecutor:
    """Runs the agent command for a dispatched task and applies the retry policy.

    Output is consumed on a pump thread so that the execution timeout and
    cancellation are enforced even while the provider call blocks.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: OrchestratorRepository,
        provider: SandboxProvider,
        pool: PoolManager,
        retry_policy: RetryPolicy,
        *,
        agent: AgentSettings | None = None,
        engine: EngineSettings | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.pool = pool
        self.retry_policy = retry_policy
        self.agent = agent or AgentSettings()
        self.engine = engine or EngineSettings()
        self._monotonic = monotonic

    def run(
        self,
        task: TaskView,
        sandbox: SandboxView,
        *,
        config: OrchestrationConfig,
        cancel_event: threading.Event | None = None,
    ) -> RetryDecision | None:
        """Execute the attempt, persist the decision, always hand the sandbox back."""

        outcome: ExecutionOutcome | None = None
        try:
            outcome = self.execute(
                task,
                sandbox,
                cancel_event or threading.Event(),
                timeout_seconds=config.execution_timeout_seconds,
            )
            return self.retry_policy.on_outcome(task, outcome, max_retries=config.max_retries)
        finally:
            self.pool.release(sandbox.sandbox_id, outcome)

    def execute(
        self,
        task: TaskView,
        sandbox: SandboxView,
        cancel_event: threading.Event,
        *,
        timeout_seconds: float,
    ) -> ExecutionOutcome:
        started = self._monotonic()
        if not sandbox.provider_ref:
            return ExecutionOutcome(
                kind=OutcomeKind.FAILURE,
                error=f"Sandbox {sandbox.sandbox_id} has no provider reference.",
                failure_class=FailureClass.SANDBOX_LOST,
                sandbox_lost=True,
            )

        env = build_agent_env(self.agent)
        secrets = secret_values(env)
        command = build_agent_command(
            self.agent.command_template,
            build_task_prompt(task, self.agent),
        )
        output = _AttemptOutput(result_max_chars=self.engine.result_max_chars)
        logger.info(
            "Executing task %s (attempt %d) in sandbox %s",
            task.task_id,
            task.attempt,
            sandbox.sandbox_id,
        )

        outcome: ExecutionOutcome
        try:
            exit_code = self._consume(
                task,
                sandbox.provider_ref,
                command,
                env=env,
                output=output,
                cancel_event=cancel_event,
                timeout_seconds=timeout_seconds,
            )
        except ExecutionTimeout as exc:
            aborted = self._abort(sandbox.provider_ref)
            outcome = ExecutionOutcome(
                kind=OutcomeKind.TIMEOUT,
                error=str(exc),
                failure_class=FailureClass.TIMEOUT,
                sandbox_lost=not aborted,
            )
        except ExecutionFailure as exc:
            classification = classify_exit(
                exit_code=exc.exit_code if exc.exit_code is not None else -1,
                output=output.tail_text(),
            )
            outcome = self._failure(str(exc), classification, secrets, exit_code=exc.exit_code)
        except ProviderError as exc:
            outcome = self._failure(
                f"Provider error: {exc}",
                classify_provider_error(exc),
                secrets,
            )
        else:
            if exit_code is None:
                aborted = self._abort(sandbox.provider_ref)
                outcome = ExecutionOutcome(kind=OutcomeKind.CANCELLED, sandbox_lost=not aborted)
            else:
                outcome = ExecutionOutcome(
                    kind=OutcomeKind.SUCCESS,
                    result=output.result(),
                    exit_code=exit_code,
                )
        outcome.duration_seconds = self._monotonic() - started
        logger.info(
            "Task %s attempt %d finished: %s in %.1fs",
            task.task_id,
            task.attempt,
            outcome.kind.value,
            outcome.duration_seconds,
        )
        return outcome

    def _consume(  # noqa: PLR0913
        self,
        task: TaskView,
        provider_ref: str,
        command: str,
        *,
        env: dict[str, str],
        output: _AttemptOutput,
        cancel_event: threading.Event,
        timeout_seconds: float,
    ) -> int | None:
        """Pump the execution stream. Returns the exit code, or None when cancelled."""

        items: queue.Queue[object] = queue.Queue()
        pump = threading.Thread(
            target=self._pump,
            args=(provider_ref, command, env, timeout_seconds, items),
            name=f"swarm-exec-{task.task_id}",
            daemon=True,
        )
        pump.start()

        deadline = self._monotonic() + timeout_seconds
        check_interval = self.engine.cancel_check_interval_seconds
        next_status_check = self._monotonic() + check_interval
        pending_lines: list[tuple[str, str]] = []
        last_flush = self._monotonic()
        try:
            while True:
                now = self._monotonic()
                if cancel_event.is_set():
                    logger.info("Task %s cancelled by engine signal", task.task_id)
                    return None
                if now >= next_status_check:
                    next_status_check = now + check_interval
                    if self.repository.get_task_status(task.task_id) != TaskStatus.RUNNING:
                        logger.info("Task %s is no longer running in the store", task.task_id)
                        return None
                if now >= deadline:
                    raise ExecutionTimeout(timeout_seconds)
                if pending_lines and (
                    len(pending_lines) >= self.engine.log_flush_max_lines
                    or now - last_flush >= self.engine.log_flush_interval_seconds
                ):
                    self._flush(task, pending_lines)
                    last_flush = now

                wait = min(check_interval, self.engine.log_flush_interval_seconds, deadline - now)
                try:
                    item = items.get(timeout=max(wait, 0.01))
                except queue.Empty:
                    continue
                if item is _STREAM_DONE:
                    raise ExecutionFailure("Execution stream ended without an exit status.")
                if isinstance(item, ProviderError):
                    raise item
                if not isinstance(item, LogLine):
                    continue
                if item.is_exit:
                    exit_code = item.exit_code if item.exit_code is not None else -1
                    if exit_code != 0:
                        tail = output.tail_text()
                        message = f"Agent exited with code {exit_code}"
                        raise ExecutionFailure(
                            f"{message}: {tail}" if tail else message,
                            exit_code=exit_code,
                        )
                    return exit_code
                output.add(item)
                pending_lines.append((item.stream, item.text))
        finally:
            self._flush(task, pending_lines)

    def _pump(
        self,
        provider_ref: str,
        command: str,
        env: dict[str, str],
        timeout_seconds: float,
        items: queue.Queue[object],
    ) -> None:
        try:
            stream: Iterator[LogLine] = self.provider.execute(
                provider_ref,
                command,
                env=env,
                cwd=self.agent.workspace_path,
                timeout_seconds=timeout_seconds,
            )
            for line in stream:
                items.put(line)
                if line.is_exit:
                    return
        except ProviderError as exc:
            items.put(exc)
            return
        except Exception as exc:
            logger.exception("Execution stream for sandbox %s crashed", provider_ref)
            items.put(ProviderError(f"Execution stream crashed: {exc}"))
            return
        items.put(_STREAM_DONE)

    def _flush(self, task: TaskView, lines: list[tuple[str, str]]) -> None:
        if not lines:
            return
        batch = list(lines)
        lines.clear()
        try:
            self.repository.append_task_logs(task_id=task.task_id, attempt=task.attempt, lines=batch)
        except IntegrityError:
            logger.debug("Task %s disappeared; dropped %d log lines", task.task_id, len(batch))

    def _abort(self, provider_ref: str) -> bool:
        """Stop the in-flight command. Returns False when the sandbox may still be busy."""

        try:
            aborted = self.provider.cancel(provider_ref)
        except ProviderError as exc:
            logger.warning("Could not abort command in sandbox %s: %s", provider_ref, exc)
            return False
        if not aborted:
            logger.warning(
                "Command in sandbox %s may still be running; the sandbox will be destroyed",
                provider_ref,
            )
        return aborted

    def _failure(
        self,
        message: str,
        classification: FailureClassification,
        secrets: tuple[str, ...],
        *,
        exit_code: int | None = None,
    ) -> ExecutionOutcome:
        kind = OutcomeKind.FAILURE
        if classification.failure_class == FailureClass.TIMEOUT:
            kind = OutcomeKind.TIMEOUT
        return ExecutionOutcome(
            kind=kind,
            error=sanitize_text(message, secrets=secrets),
            exit_code=exit_code,
            failure_class=classification.failure_class,
            sandbox_lost=classification.sandbox_lost,
            failure_details=classification.to_event_details(),
        )
