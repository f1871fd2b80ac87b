"""Use-case services: the write/read surface over swarms, tasks and the pool."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from swarm_engine.errors import InvalidTransitionError, NotFoundError
from swarm_engine.orchestrator.models import (
    ConfigUpdate,
    OrchestrationConfig,
    PoolStatus,
    SwarmCreate,
    SwarmStatus,
    SwarmView,
    TaskCreate,
    TaskDetails,
    TaskLogView,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from swarm_engine.orchestrator.pool import PoolManager
from swarm_engine.orchestrator.repository import OrchestratorRepository

if TYPE_CHECKING:
    from swarm_engine.orchestrator.trigger import TriggerEngine

logger = logging.getLogger(__name__)


class SwarmService:
    """Coordinates store mutations with pool side effects and engine signals.

    ``pool`` is needed only by sandbox operations and swarm deletion;
    ``engine`` is optional and, when present, is signalled on cancel.
    """

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        pool: PoolManager | None = None,
        engine: TriggerEngine | None = None,
    ) -> None:
        self.repository = repository
        self.pool = pool
        self.engine = engine

    # ---------------------------------------------------------------- swarms

    def create_swarm(self, payload: SwarmCreate) -> SwarmView:
        swarm = self.repository.create_swarm(payload)
        logger.info("Swarm %s created (%s)", swarm.swarm_id, swarm.name)
        return swarm

    def list_swarms(self, *, status: SwarmStatus | None = None) -> list[SwarmView]:
        return self.repository.list_swarms(status=status)

    def get_swarm(self, swarm_id: str) -> SwarmView:
        swarm = self.repository.get_swarm(swarm_id)
        if swarm is None:
            raise NotFoundError(f"Swarm not found: {swarm_id}")
        return swarm

    def pause_swarm(self, swarm_id: str) -> SwarmView:
        """Suspend dispatch; running tasks keep running."""

        return self.repository.set_swarm_status(swarm_id, SwarmStatus.PAUSED)

    def resume_swarm(self, swarm_id: str) -> SwarmView:
        return self.repository.set_swarm_status(swarm_id, SwarmStatus.ACTIVE)

    def stop_swarm(self, swarm_id: str) -> SwarmView:
        return self.repository.set_swarm_status(swarm_id, SwarmStatus.STOPPED)

    def delete_swarm(self, swarm_id: str) -> list[str]:
        """Destroy the swarm's sandboxes, then delete it with its tasks.

        Returns ids of destroyed sandboxes.
        """

        self.get_swarm(swarm_id)
        running = self.repository.count_tasks_by_status(swarm_ids=[swarm_id])[TaskStatus.RUNNING]
        if running:
            raise InvalidTransitionError(
                f"Swarm {swarm_id} has {running} running task(s); cancel them first.",
            )
        destroyed = self._require_pool().destroy_swarm_sandboxes(swarm_id)
        self.repository.delete_swarm(swarm_id)
        logger.info("Swarm %s deleted; destroyed %d sandbox(es)", swarm_id, len(destroyed))
        return destroyed

    # ----------------------------------------------------------------- tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        return self.repository.create_task(payload)

    def update_task(self, task_id: str, changes: TaskUpdate) -> TaskView:
        return self.repository.update_task(task_id, changes)

    def delete_task(self, task_id: str) -> None:
        self.repository.delete_task(task_id)

    def list_tasks(
        self,
        *,
        swarm_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        return self.repository.list_tasks(swarm_id=swarm_id, status=status, limit=limit)

    def inspect_task(self, task_id: str) -> TaskDetails:
        details = self.repository.get_task_details(task_id)
        if details is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return details

    def retry_task(self, task_id: str) -> TaskView:
        return self.repository.retry_task(task_id)

    def cancel_task(self, task_id: str) -> TaskStatus:
        """Cancel a pending or running task; a running one is signalled in-process."""

        previous = self.repository.cancel_task(task_id)
        if previous == TaskStatus.RUNNING and self.engine is not None:
            if not self.engine.cancel(task_id):
                logger.info(
                    "Task %s is not executing in this process; its executor will notice "
                    "the cancelled status",
                    task_id,
                )
        return previous

    def task_logs(
        self,
        task_id: str,
        *,
        attempt: int | None = None,
        after_id: int = 0,
        limit: int | None = None,
    ) -> list[TaskLogView]:
        if self.repository.get_task_status(task_id) is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return self.repository.list_task_logs(
            task_id,
            attempt=attempt,
            after_id=after_id,
            limit=limit,
        )

    # ------------------------------------------------------------------ pool

    def destroy_sandbox(self, sandbox_id: str) -> bool:
        return self._require_pool().destroy(sandbox_id)

    def cleanup_idle(self) -> list[str]:
        return self._require_pool().cleanup_idle(self.repository.get_config())

    def pool_status(self) -> PoolStatus:
        return self._require_pool().status(self.repository.get_config())

    # ---------------------------------------------------------------- config

    def get_config(self) -> OrchestrationConfig:
        return self.repository.get_config()

    def update_config(self, changes: ConfigUpdate) -> OrchestrationConfig:
        config = self.repository.update_config(changes)
        logger.info("Orchestration config updated: %s", config)
        return config

    def _require_pool(self) -> PoolManager:
        if self.pool is None:
            raise RuntimeError("SwarmService was built without a pool manager.")
        return self.pool
