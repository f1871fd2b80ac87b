"""Retry policy: turn an attempt outcome into completed, requeue or failed."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from swarm_engine.orchestrator.models import (
    ExecutionOutcome,
    OutcomeKind,
    RetryDecision,
    TaskView,
)
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_DELAY_SECONDS = 5.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 300.0


def next_retry_state(retry_count: int, *, max_retries: int) -> tuple[int, RetryDecision]:
    """Count one more failed attempt; requeue while the count stays within budget."""

    new_count = retry_count + 1
    if new_count <= max_retries:
        return new_count, RetryDecision.REQUEUE
    return new_count, RetryDecision.FAILED


def compute_retry_delay(retry_number: int, *, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: ``base * 2 ** (retry_number - 1)``, capped at ``max_seconds``."""

    if base_seconds <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))


class RetryPolicy:
    """Applies outcomes through the store's guarded transitions."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock

    def retry_after(self, retry_number: int) -> datetime | None:
        """Earliest dispatch time for the given retry, or None without backoff."""

        delay = compute_retry_delay(
            retry_number,
            base_seconds=self.base_delay_seconds,
            max_seconds=self.max_delay_seconds,
        )
        if delay <= 0:
            return None
        return self._clock() + timedelta(seconds=delay)

    def on_outcome(
        self,
        task: TaskView,
        outcome: ExecutionOutcome,
        *,
        max_retries: int,
    ) -> RetryDecision | None:
        """Persist the decision for a running task.

        Returns None for cancelled outcomes and when the task is no longer
        running (cancelled or otherwise changed while the attempt ran).
        """

        if outcome.kind == OutcomeKind.CANCELLED:
            return None

        if outcome.kind == OutcomeKind.SUCCESS:
            if self.repository.complete_task(task_id=task.task_id, result=outcome.result or ""):
                logger.info("Task %s completed", task.task_id)
                return RetryDecision.COMPLETED
            logger.info("Task %s finished but is no longer running; result dropped", task.task_id)
            return None

        error = outcome.error or f"Task {outcome.kind.value}"
        new_count, decision = next_retry_state(task.retry_count, max_retries=max_retries)
        details: dict[str, object] = {"outcome": outcome.kind.value}
        details.update(outcome.failure_details)
        if outcome.exit_code is not None:
            details["exit_code"] = outcome.exit_code
        if outcome.failure_class is not None:
            details["failure_class"] = outcome.failure_class.value

        if decision == RetryDecision.REQUEUE:
            applied = self.repository.requeue_task(
                task_id=task.task_id,
                retry_count=new_count,
                error=error,
                retry_after=self.retry_after(new_count),
                details=details,
            )
            if applied:
                logger.warning(
                    "Task %s attempt failed (%s); requeued, retry %d/%d",
                    task.task_id,
                    outcome.kind.value,
                    new_count,
                    max_retries,
                )
                return RetryDecision.REQUEUE
            return None

        applied = self.repository.fail_task(
            task_id=task.task_id,
            retry_count=new_count,
            error=error,
            details=details,
        )
        if applied:
            logger.error(
                "Task %s failed permanently after %d retries: %s",
                task.task_id,
                max_retries,
                error,
            )
            return RetryDecision.FAILED
        return None

    def on_provision_failure(
        self,
        task: TaskView,
        error: str,
        *,
        max_retries: int,
    ) -> RetryDecision | None:
        """Charge a provisioning failure to a pending task without a sandbox."""

        new_count, decision = next_retry_state(task.retry_count, max_retries=max_retries)
        applied = self.repository.record_provision_failure(
            task_id=task.task_id,
            expected_retry_count=task.retry_count,
            retry_count=new_count,
            error=error,
            terminal=decision == RetryDecision.FAILED,
            retry_after=self.retry_after(new_count),
        )
        if not applied:
            return None
        if decision == RetryDecision.FAILED:
            logger.error("Task %s failed: sandbox provisioning kept failing: %s", task.task_id, error)
        else:
            logger.warning(
                "Provisioning for task %s failed, retry %d/%d: %s",
                task.task_id,
                new_count,
                max_retries,
                error,
            )
        return decision
