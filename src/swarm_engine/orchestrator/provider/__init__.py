"""Sandbox providers consumed by the pool manager and task executor."""

from swarm_engine.orchestrator.provider.base import (
    LogLine,
    ProviderAuthError,
    ProviderError,
    SandboxNotFoundError,
    SandboxProvider,
)

__all__ = [
    "LogLine",
    "ProviderAuthError",
    "ProviderError",
    "SandboxNotFoundError",
    "SandboxProvider",
]
