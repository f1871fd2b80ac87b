"""Pool manager: capacity-bounded set of provider sandboxes reused within a swarm."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from swarm_engine.errors import ProvisionError
from swarm_engine.orchestrator.models import (
    ExecutionOutcome,
    OrchestrationConfig,
    PoolStats,
    PoolStatus,
    SandboxInfo,
    SandboxStatus,
    SandboxView,
)
from swarm_engine.orchestrator.provider.base import (
    ProviderAuthError,
    ProviderError,
    SandboxNotFoundError,
    SandboxProvider,
)
from swarm_engine.orchestrator.repository import OrchestratorRepository
from swarm_engine.storage.common import utc_now

logger = logging.getLogger(__name__)


class PoolSignal(str, Enum):
    CAPACITY_EXHAUSTED = "capacity_exhausted"


CAPACITY_EXHAUSTED: Literal[PoolSignal.CAPACITY_EXHAUSTED] = PoolSignal.CAPACITY_EXHAUSTED


class PoolManager:
    """Owns sandbox assignment, release, idle eviction and explicit destroy.

    ``busy + idle <= pool_max_sandboxes`` holds because capacity checks and
    reservations happen under one process lock, and every status change is a
    conditional update in the store.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        provider: SandboxProvider,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self._clock = clock
        self._lock = threading.Lock()

    def acquire(
        self,
        swarm_id: str,
        snapshot: str,
        *,
        task_id: str,
        config: OrchestrationConfig,
    ) -> SandboxView | Literal[PoolSignal.CAPACITY_EXHAUSTED]:
        """Reuse an idle sandbox of this swarm or provision a new one within capacity.

        Raises ProvisionError when the provider fails to create a sandbox; the
        reservation is marked destroyed so capacity is returned.
        """

        with self._lock:
            claimed = self.repository.claim_idle_sandbox(
                swarm_id=swarm_id,
                snapshot=snapshot,
                task_id=task_id,
            )
            if claimed is not None:
                logger.debug("Reusing sandbox %s for task %s", claimed.sandbox_id, task_id)
                return claimed
            live = self.repository.count_live_sandboxes()
            if live >= config.pool_max_sandboxes:
                logger.debug(
                    "Pool at capacity (%d/%d); task %s stays pending",
                    live,
                    config.pool_max_sandboxes,
                    task_id,
                )
                return CAPACITY_EXHAUSTED
            reserved = self.repository.reserve_sandbox(
                swarm_id=swarm_id,
                snapshot=snapshot,
                task_id=task_id,
            )

        try:
            provider_ref = self.provider.create(snapshot)
        except ProviderAuthError:
            self.repository.mark_sandbox_destroyed(reserved.sandbox_id)
            raise
        except ProviderError as exc:
            self.repository.mark_sandbox_destroyed(reserved.sandbox_id)
            raise ProvisionError(f"Failed to provision sandbox ({snapshot}): {exc}") from exc

        attached = self.repository.attach_provider_ref(
            sandbox_id=reserved.sandbox_id,
            provider_ref=provider_ref,
        )
        if attached is None:
            # Reservation was destroyed while the provider was creating it.
            self._destroy_provider_sandbox(provider_ref)
            raise ProvisionError(f"Sandbox {reserved.sandbox_id} was evicted while provisioning.")
        logger.info(
            "Provisioned sandbox %s (%s) for swarm %s",
            attached.sandbox_id,
            provider_ref,
            swarm_id,
        )
        return attached

    def release(self, sandbox_id: str, outcome: ExecutionOutcome | None = None) -> None:
        """Return a busy sandbox to idle, or destroy it if it is lost or may still be busy."""

        if outcome is not None and outcome.sandbox_lost:
            logger.warning("Sandbox %s cannot be reused; destroying", sandbox_id)
            self.destroy(sandbox_id)
            return
        if not self.repository.release_sandbox(sandbox_id):
            logger.info("Sandbox %s was not busy at release; leaving it as is", sandbox_id)

    def destroy(self, sandbox_id: str) -> bool:
        """Evict a sandbox regardless of state. Returns False if already destroyed."""

        before = self.repository.mark_sandbox_destroyed(sandbox_id)
        if before is None:
            return False
        if before.provider_ref:
            self._destroy_provider_sandbox(before.provider_ref)
        logger.info("Sandbox %s destroyed (was %s)", sandbox_id, before.status.value)
        return True

    def sweep_idle(
        self,
        config: OrchestrationConfig,
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Destroy idle sandboxes unused for at least the idle timeout."""

        cutoff = (now or self._clock()) - timedelta(seconds=config.pool_idle_timeout_seconds)
        destroyed: list[str] = []
        for sandbox in self.repository.list_idle_sandboxes_before(cutoff):
            before = self.repository.mark_sandbox_destroyed(
                sandbox.sandbox_id,
                expected_status=SandboxStatus.IDLE,
            )
            if before is None:
                continue
            if before.provider_ref:
                self._destroy_provider_sandbox(before.provider_ref)
            destroyed.append(sandbox.sandbox_id)
        if destroyed:
            logger.info("Idle sweep destroyed %d sandbox(es)", len(destroyed))
        return destroyed

    def cleanup_idle(self, config: OrchestrationConfig) -> list[str]:
        """Explicit idle cleanup; same rule as the per-cycle sweep."""

        return self.sweep_idle(config)

    def destroy_swarm_sandboxes(self, swarm_id: str) -> list[str]:
        destroyed = []
        for sandbox in self.repository.list_sandboxes(swarm_id=swarm_id, include_destroyed=False):
            if self.destroy(sandbox.sandbox_id):
                destroyed.append(sandbox.sandbox_id)
        return destroyed

    def destroy_orphaned_busy(self) -> list[str]:
        """Destroy busy sandboxes left behind by an engine that did not shut down cleanly."""

        destroyed = []
        for sandbox in self.repository.list_sandboxes(status=SandboxStatus.BUSY):
            if self.destroy(sandbox.sandbox_id):
                destroyed.append(sandbox.sandbox_id)
        return destroyed

    def status(self, config: OrchestrationConfig, *, now: datetime | None = None) -> PoolStatus:
        current = now or self._clock()
        sandboxes = self.repository.list_sandboxes()
        stats = PoolStats(total=len(sandboxes))
        infos: list[SandboxInfo] = []
        for sandbox in sandboxes:
            idle_seconds = None
            if sandbox.status == SandboxStatus.IDLE:
                stats.idle += 1
                idle_seconds = max(0.0, (current - sandbox.idle_since()).total_seconds())
            elif sandbox.status == SandboxStatus.BUSY:
                stats.busy += 1
            else:
                stats.destroyed += 1
            infos.append(SandboxInfo(sandbox=sandbox, idle_seconds=idle_seconds))
        return PoolStatus(config=config, stats=stats, sandboxes=infos)

    def _destroy_provider_sandbox(self, provider_ref: str) -> None:
        try:
            self.provider.destroy(provider_ref)
        except SandboxNotFoundError:
            logger.debug("Provider sandbox %s already gone", provider_ref)
        except ProviderError as exc:
            logger.warning("Provider failed to destroy sandbox %s: %s", provider_ref, exc)
