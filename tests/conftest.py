"""Shared test fixtures."""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from swarm_engine.config import AgentSettings, EngineSettings
from swarm_engine.orchestrator.executor import TaskExecutor
from swarm_engine.orchestrator.models import (
    ConfigUpdate,
    SwarmCreate,
    SwarmView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from swarm_engine.orchestrator.pool import PoolManager
from swarm_engine.orchestrator.provider.base import LogLine, ProviderError, SandboxNotFoundError
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.orchestrator.retry import RetryPolicy
from swarm_engine.orchestrator.trigger import TriggerEngine

_TITLE_RE = re.compile(r"## Task: ([^\n]+)")


@dataclass(slots=True)
class Script:
    """Scripted behavior of one agent run inside the fake provider."""

    lines: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()
    exit_code: int = 0
    delay_seconds: float = 0.0
    block: bool = False
    error: ProviderError | None = None


@dataclass(slots=True)
class ExecutionRecord:
    provider_ref: str
    title: str
    command: str
    env: dict[str, str]
    cwd: str | None


@dataclass
class FakeProvider:
    """In-memory provider; agent runs are scripted per task title.

    Titles map to a list of scripts consumed one per attempt; the last one
    repeats. Unscripted titles succeed with ``done: <title>``.
    """

    name: str = "fake"
    scripts: dict[str, list[Script]] = field(default_factory=dict)
    create_errors: list[ProviderError] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    executions: list[ExecutionRecord] = field(default_factory=list)
    active: int = 0
    max_active: int = 0
    healthy: bool = True
    can_abort: bool = True

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._releases: dict[str, threading.Event] = {}
        self._counter = 0

    def script(self, title: str, *scripts: Script) -> None:
        self.scripts[title] = list(scripts)

    def create(self, snapshot: str) -> str:
        with self._lock:
            if self.create_errors:
                raise self.create_errors.pop(0)
            self._counter += 1
            provider_ref = f"fake-{self._counter}"
            self.created.append(provider_ref)
        return provider_ref

    def execute(
        self,
        provider_ref: str,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[LogLine]:
        with self._lock:
            if provider_ref in self.destroyed:
                raise SandboxNotFoundError(provider_ref)
            match = _TITLE_RE.search(command)
            title = match.group(1) if match else ""
            queue = self.scripts.get(title)
            if queue:
                script = queue.pop(0) if len(queue) > 1 else queue[0]
            else:
                script = Script(lines=(f"done: {title}",))
            self.executions.append(
                ExecutionRecord(
                    provider_ref=provider_ref,
                    title=title,
                    command=command,
                    env=dict(env or {}),
                    cwd=cwd,
                ),
            )
            release = threading.Event()
            self._releases[provider_ref] = release
        if script.error is not None:
            raise script.error
        return self._run(script, release)

    def destroy(self, provider_ref: str) -> None:
        with self._lock:
            if provider_ref in self.destroyed or provider_ref not in self.created:
                raise SandboxNotFoundError(provider_ref)
            self.destroyed.append(provider_ref)
            release = self._releases.get(provider_ref)
        if release is not None:
            release.set()

    def cancel(self, provider_ref: str) -> bool:
        with self._lock:
            self.cancelled.append(provider_ref)
            release = self._releases.get(provider_ref)
        if not self.can_abort:
            return False
        if release is not None:
            release.set()
        return True

    def health(self) -> bool:
        return self.healthy

    def close(self) -> None:
        with self._lock:
            releases = list(self._releases.values())
        for release in releases:
            release.set()

    def titles(self) -> list[str]:
        with self._lock:
            return [record.title for record in self.executions]

    def _run(self, script: Script, release: threading.Event) -> Iterator[LogLine]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if script.delay_seconds:
                time.sleep(script.delay_seconds)
            for line in script.lines:
                yield LogLine.stdout(line)
            for line in script.stderr:
                yield LogLine.stderr(line)
            if script.block:
                release.wait(timeout=10)
                return
            yield LogLine.exit(script.exit_code)
        finally:
            with self._lock:
                self.active -= 1


@dataclass(slots=True)
class Runtime:
    repository: OrchestratorRepository
    provider: FakeProvider
    pool: PoolManager
    retry: RetryPolicy
    executor: TaskExecutor
    engine: TriggerEngine

    def swarm(self, name: str = "swarm") -> SwarmView:
        return self.repository.create_swarm(SwarmCreate(name=name))

    def task(  # noqa: PLR0913
        self,
        swarm: SwarmView,
        title: str,
        *,
        priority: TaskPriority = TaskPriority.MEDIUM,
        depends_on: tuple[str, ...] = (),
        description: str = "",
        tags: tuple[str, ...] = (),
    ) -> TaskView:
        return self.repository.create_task(
            TaskCreate(
                swarm_id=swarm.swarm_id,
                title=title,
                description=description,
                priority=priority,
                depends_on=depends_on,
                tags=tags,
            ),
        )

    def status(self, task: TaskView) -> TaskStatus | None:
        return self.repository.get_task_status(task.task_id)

    def drive(self, *, max_cycles: int = 20) -> None:
        """Run cycles until nothing is pending or running, joining executions each time."""

        for _ in range(max_cycles):
            self.engine.run_cycle()
            assert self.engine.wait_idle(10)
            counts = self.repository.count_tasks_by_status()
            if not counts[TaskStatus.PENDING] and not counts[TaskStatus.RUNNING]:
                return

    def configure(self, **changes: object) -> None:
        self.repository.update_config(ConfigUpdate(**changes))  # type: ignore[arg-type]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(tmp_path / "swarm.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(
        cancel_check_interval_seconds=0.05,
        log_flush_interval_seconds=0.05,
        log_flush_max_lines=10,
        result_max_chars=2_000,
        shutdown_wait_seconds=2.0,
    )


@pytest.fixture()
def runtime(
    repository: OrchestratorRepository,
    fake_provider: FakeProvider,
    engine_settings: EngineSettings,
) -> Iterator[Runtime]:
    pool = PoolManager(repository, fake_provider)
    retry = RetryPolicy(repository, base_delay_seconds=0.0)
    executor = TaskExecutor(
        repository,
        fake_provider,
        pool,
        retry,
        agent=AgentSettings(anthropic_api_key="sk-ant-test-secret-value"),
        engine=engine_settings,
    )
    engine = TriggerEngine(
        repository,
        pool,
        executor,
        max_workers=8,
        shutdown_wait_seconds=engine_settings.shutdown_wait_seconds,
    )
    try:
        yield Runtime(
            repository=repository,
            provider=fake_provider,
            pool=pool,
            retry=retry,
            executor=executor,
            engine=engine,
        )
    finally:
        fake_provider.close()
        engine.stop(timeout=2)
