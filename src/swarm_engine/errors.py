"""Error taxonomy for the orchestration engine."""

from __future__ import annotations


class SwarmEngineError(RuntimeError):
    """Base class for engine errors."""


class ValidationError(SwarmEngineError, ValueError):
    """Rejected mutation: bad input, missing or cyclic dependency reference."""


class NotFoundError(SwarmEngineError):
    """Referenced swarm, task or sandbox does not exist."""


class InvalidTransitionError(SwarmEngineError):
    """Requested state change is not allowed from the current state."""


class ConfigError(SwarmEngineError):
    """Engine cannot dispatch anything until configuration is fixed."""


class ProvisionError(SwarmEngineError):
    """Sandbox provider failed to create a sandbox."""


class ExecutionTimeout(SwarmEngineError):
    """Sandbox did not signal completion within the execution timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Task timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class ExecutionFailure(SwarmEngineError):
    """Provider reported an execution error or non-zero exit status."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
