"""Trigger engine: the polling loop that dispatches runnable tasks onto sandboxes."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from enum import Enum

from swarm_engine.errors import ConfigError, ProvisionError
from swarm_engine.orchestrator.executor import TaskExecutor
from swarm_engine.orchestrator.models import (
    ExecutionOutcome,
    FailureClass,
    OrchestrationConfig,
    OutcomeKind,
    RetryDecision,
    SandboxStatus,
    SandboxView,
    SwarmStatus,
    SwarmView,
    TaskStatus,
    TaskView,
)
from swarm_engine.orchestrator.pool import CAPACITY_EXHAUSTED, PoolManager
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.orchestrator.scheduler import find_blocked, select_next
from swarm_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_WAIT_SECONDS = 30.0


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(slots=True)
class CycleSummary:
    """Counters of one trigger cycle."""

    enabled: bool = True
    swarms: int = 0
    dispatched: int = 0
    capacity_waits: int = 0
    provision_failures: int = 0
    swept: int = 0
    blocked: int = 0
    completed: int = 0


@dataclass(slots=True)
class TriggerStats:
    processing_count: int
    is_running: bool
    tasks_pending: int
    tasks_running: int
    tasks_completed: int
    tasks_failed: int
    tasks_cancelled: int


@dataclass(slots=True)
class EngineHealth:
    state: EngineState
    healthy: bool
    reason: str | None = None


@dataclass(slots=True)
class CompletedAttempt:
    """Completion notice posted by an executor job for the loop to log."""

    task_id: str
    swarm_id: str
    decision: RetryDecision | None
    error: str | None = None


class TriggerEngine:
    """Single orchestration loop per process.

    The loop never waits on executions: dispatched attempts run on a thread
    pool and talk back through the store and a completion queue.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        pool: PoolManager,
        executor: TaskExecutor,
        *,
        max_workers: int | None = None,
        shutdown_wait_seconds: float = DEFAULT_SHUTDOWN_WAIT_SECONDS,
    ) -> None:
        self.repository = repository
        self.pool = pool
        self.executor = executor
        self._max_workers = max_workers
        self._shutdown_wait_seconds = shutdown_wait_seconds

        self._lock = threading.Lock()
        self._state = EngineState.STOPPED
        self._halt_reason: str | None = None
        self._stop_event = threading.Event()
        self._interrupted = threading.Event()
        self._thread: threading.Thread | None = None
        self._workers: ThreadPoolExecutor | None = None
        self._processing: dict[str, threading.Event] = {}
        self._futures: set[Future[None]] = set()
        self._completions: queue.Queue[CompletedAttempt] = queue.Queue()
        self._reported_blocked: dict[str, set[str]] = {}
        self._poll_interval_seconds = 5.0

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    def start(self) -> bool:
        """Start the background loop. Returns False when triggers are disabled."""

        with self._lock:
            if self._state == EngineState.RUNNING:
                return True
        config = self.repository.get_config()
        if not config.trigger_enabled:
            logger.info("Trigger engine not started: triggers are disabled in config")
            return False

        self.recover_orphans(config)
        with self._lock:
            self._ensure_workers(config)
            self._stop_event.clear()
            self._interrupted.clear()
            self._halt_reason = None
            self._state = EngineState.RUNNING
            self._poll_interval_seconds = float(config.trigger_poll_interval_seconds)
            self._thread = threading.Thread(
                target=self._loop,
                name="swarm-trigger",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "Trigger engine started (poll=%ss, max_sandboxes=%d)",
            config.trigger_poll_interval_seconds,
            config.pool_max_sandboxes,
        )
        return True

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop dispatching, wait for in-flight attempts, interrupt the rest.

        Attempts still running after the wait are signalled and requeued as
        interrupted; their sandboxes are released by the executor.
        """

        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            self._state = EngineState.STOPPED
            self._thread = None

        wait_seconds = self._shutdown_wait_seconds if timeout is None else timeout
        if not self.wait_idle(wait_seconds):
            logger.warning("Interrupting %d running task(s) for shutdown", len(self._processing))
            self._interrupted.set()
            with self._lock:
                events = list(self._processing.values())
            for event in events:
                event.set()
            self.wait_idle(None)
        self._drain_completions()

        with self._lock:
            workers, self._workers = self._workers, None
        if workers is not None:
            workers.shutdown(wait=True)
        logger.info("Trigger engine stopped")

    def run_cycle(self) -> CycleSummary:
        """One pass: sweep idle sandboxes, then dispatch per active swarm.

        Raises ConfigError after halting the engine when the provider can
        never dispatch (for example, rejected credentials).
        """

        summary = CycleSummary()
        summary.completed = self._drain_completions()
        config = self.repository.get_config()
        self._poll_interval_seconds = float(config.trigger_poll_interval_seconds)
        if not config.trigger_enabled:
            summary.enabled = False
            if self.state == EngineState.RUNNING:
                logger.info("Triggers disabled in config; stopping the loop")
                self._stop_event.set()
                with self._lock:
                    self._state = EngineState.STOPPED
            return summary

        with self._lock:
            self._ensure_workers(config)

        summary.swept = len(self.pool.sweep_idle(config))
        swarms = self.repository.list_swarms(status=SwarmStatus.ACTIVE)
        self._forget_blocked_outside({swarm.swarm_id for swarm in swarms})
        for swarm in swarms:
            summary.swarms += 1
            try:
                self._process_swarm(swarm, config, summary)
            except ConfigError as exc:
                self._halt(str(exc))
                raise
            except Exception:
                logger.exception("Error processing swarm %s", swarm.swarm_id)

        if summary.dispatched or summary.provision_failures or summary.swept:
            logger.info(
                "Cycle: dispatched=%d capacity_waits=%d provision_failures=%d swept=%d blocked=%d",
                summary.dispatched,
                summary.capacity_waits,
                summary.provision_failures,
                summary.swept,
                summary.blocked,
            )
        return summary

    def cancel(self, task_id: str) -> bool:
        """Signal the executor of a running task. Returns False if not running here."""

        with self._lock:
            event = self._processing.get(task_id)
        if event is None:
            return False
        event.set()
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no attempt is in flight. Returns False on timeout."""

        with self._lock:
            futures = set(self._futures)
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def recover_orphans(self, config: OrchestrationConfig | None = None) -> int:
        """Requeue tasks left running by a previous process; destroy its busy sandboxes."""

        with self._lock:
            if self._processing:
                return 0
        current = config or self.repository.get_config()
        recovered = 0
        for task in self.repository.list_running_tasks():
            if self._requeue_interrupted(task, current, reason="Engine restarted") is not None:
                recovered += 1
        destroyed = self.pool.destroy_orphaned_busy()
        if recovered or destroyed:
            logger.warning(
                "Recovered %d orphaned task(s); destroyed %d orphaned sandbox(es)",
                recovered,
                len(destroyed),
            )
        return recovered

    def stats(self) -> TriggerStats:
        active = [swarm.swarm_id for swarm in self.repository.list_swarms(status=SwarmStatus.ACTIVE)]
        counts = self.repository.count_tasks_by_status(swarm_ids=active)
        with self._lock:
            processing = len(self._processing)
            running = self._state == EngineState.RUNNING
        return TriggerStats(
            processing_count=processing,
            is_running=running,
            tasks_pending=counts[TaskStatus.PENDING],
            tasks_running=counts[TaskStatus.RUNNING],
            tasks_completed=counts[TaskStatus.COMPLETED],
            tasks_failed=counts[TaskStatus.FAILED],
            tasks_cancelled=counts[TaskStatus.CANCELLED],
        )

    def health(self) -> EngineHealth:
        with self._lock:
            return EngineHealth(
                state=self._state,
                healthy=self._halt_reason is None,
                reason=self._halt_reason,
            )

    # ------------------------------------------------------------------ loop

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except ConfigError as exc:
                logger.error("Trigger engine halted: %s", exc)
                return
            except Exception:
                logger.exception("Trigger cycle failed")
            self._stop_event.wait(self._poll_interval_seconds)

    def _halt(self, reason: str) -> None:
        with self._lock:
            self._halt_reason = reason
            self._state = EngineState.STOPPED
        self._stop_event.set()

    def _ensure_workers(self, config: OrchestrationConfig) -> ThreadPoolExecutor:
        if self._workers is None:
            self._workers = ThreadPoolExecutor(
                max_workers=self._max_workers or config.pool_max_sandboxes,
                thread_name_prefix="swarm-task",
            )
        return self._workers

    def _process_swarm(
        self,
        swarm: SwarmView,
        config: OrchestrationConfig,
        summary: CycleSummary,
    ) -> None:
        pending = self.repository.list_pending_tasks(swarm.swarm_id)
        if not pending:
            self._reported_blocked.pop(swarm.swarm_id, None)
            return
        statuses = self.repository.swarm_task_statuses(swarm.swarm_id)
        self._report_blocked(swarm.swarm_id, pending, statuses, summary)
        now = utc_now()

        with self._lock:
            handled = set(self._processing)
        while True:
            task = select_next(pending, statuses, exclude=handled, now=now)
            if task is None:
                return
            handled.add(task.task_id)
            if not self._dispatch(swarm, task, config, summary):
                return

    def _report_blocked(
        self,
        swarm_id: str,
        pending: list[TaskView],
        statuses: dict[str, TaskStatus],
        summary: CycleSummary,
    ) -> None:
        """Record each blocked task once per blocking episode.

        Tasks that are no longer pending and blocked are forgotten, so a
        dependency that fails again after a manual retry is reported again.
        """

        reported = self._reported_blocked.get(swarm_id, set())
        current: set[str] = set()
        for blocked in find_blocked(pending, statuses):
            summary.blocked += 1
            current.add(blocked.task_id)
            if blocked.task_id in reported:
                continue
            logger.warning(
                "Task %s is blocked by dependencies that will not complete: %s",
                blocked.task_id,
                blocked.blocking,
            )
            self.repository.record_blocked(task_id=blocked.task_id, blocking=blocked.blocking)
        if current:
            self._reported_blocked[swarm_id] = current
        else:
            self._reported_blocked.pop(swarm_id, None)

    def _forget_blocked_outside(self, swarm_ids: set[str]) -> None:
        for swarm_id in set(self._reported_blocked) - swarm_ids:
            del self._reported_blocked[swarm_id]

    def _dispatch(
        self,
        swarm: SwarmView,
        task: TaskView,
        config: OrchestrationConfig,
        summary: CycleSummary,
    ) -> bool:
        """Try to start ``task``. Returns False when the swarm should yield this cycle."""

        try:
            sandbox = self.pool.acquire(
                swarm.swarm_id,
                config.default_snapshot,
                task_id=task.task_id,
                config=config,
            )
        except ProvisionError as exc:
            summary.provision_failures += 1
            logger.warning("Provisioning failed for task %s: %s", task.task_id, exc)
            self.executor.retry_policy.on_provision_failure(
                task,
                str(exc),
                max_retries=config.max_retries,
            )
            return True
        if sandbox is CAPACITY_EXHAUSTED:
            summary.capacity_waits += 1
            return False

        started = self.repository.start_task(task_id=task.task_id, sandbox_id=sandbox.sandbox_id)
        if started is None:
            logger.info("Task %s changed before dispatch; releasing sandbox", task.task_id)
            self.pool.release(sandbox.sandbox_id)
            return True
        self._submit(started, sandbox, config)
        summary.dispatched += 1
        logger.info(
            "Dispatched task %s (%s) to sandbox %s",
            started.task_id,
            started.priority.value,
            sandbox.sandbox_id,
        )
        return True

    def _submit(self, task: TaskView, sandbox: SandboxView, config: OrchestrationConfig) -> None:
        cancel_event = threading.Event()
        with self._lock:
            workers = self._ensure_workers(config)
            self._processing[task.task_id] = cancel_event
            future = workers.submit(self._run_job, task, sandbox, config, cancel_event)
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future[None]) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run_job(
        self,
        task: TaskView,
        sandbox: SandboxView,
        config: OrchestrationConfig,
        cancel_event: threading.Event,
    ) -> None:
        decision: RetryDecision | None = None
        error: str | None = None
        try:
            decision = self.executor.run(task, sandbox, config=config, cancel_event=cancel_event)
            if decision is None and self._interrupted.is_set():
                decision = self._requeue_interrupted(task, config, reason="Engine shut down")
        except Exception as exc:
            logger.exception("Executor job for task %s crashed", task.task_id)
            error = str(exc)
            decision = self._requeue_crashed(task, sandbox, config)
        finally:
            with self._lock:
                self._processing.pop(task.task_id, None)
            self._completions.put(
                CompletedAttempt(
                    task_id=task.task_id,
                    swarm_id=task.swarm_id,
                    decision=decision,
                    error=error,
                ),
            )

    def _requeue_crashed(
        self,
        task: TaskView,
        sandbox: SandboxView,
        config: OrchestrationConfig,
    ) -> RetryDecision | None:
        """Charge a crashed attempt so the task does not stay running until restart.

        A sandbox still held by this task may be running the command, so it
        is destroyed rather than returned to the pool.
        """

        try:
            current = self.repository.get_sandbox(sandbox.sandbox_id)
            if (
                current is not None
                and current.status == SandboxStatus.BUSY
                and current.current_task_ref == task.task_id
            ):
                self.pool.destroy(sandbox.sandbox_id)
            return self._requeue_interrupted(task, config, reason="Executor crashed")
        except Exception:
            logger.exception("Could not requeue task %s after executor crash", task.task_id)
            return None

    def _requeue_interrupted(
        self,
        task: TaskView,
        config: OrchestrationConfig,
        *,
        reason: str,
    ) -> RetryDecision | None:
        outcome = ExecutionOutcome(
            kind=OutcomeKind.FAILURE,
            error=f"{reason} while the task was running",
            failure_class=FailureClass.INTERRUPTED,
        )
        return self.executor.retry_policy.on_outcome(task, outcome, max_retries=config.max_retries)

    def _drain_completions(self) -> int:
        drained = 0
        while True:
            try:
                item = self._completions.get_nowait()
            except queue.Empty:
                return drained
            drained += 1
            if item.error is not None:
                logger.error("Task %s attempt crashed: %s", item.task_id, item.error)
            else:
                logger.debug(
                    "Task %s attempt finished: %s",
                    item.task_id,
                    item.decision.value if item.decision else "no transition",
                )
