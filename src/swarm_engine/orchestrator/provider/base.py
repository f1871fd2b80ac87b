"""Sandbox provider interface consumed by the pool manager and executor."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Protocol

from swarm_engine.errors import ConfigError, SwarmEngineError

STREAM_STDOUT = "stdout"
STREAM_STDERR = "stderr"
STREAM_EXIT = "exit"


@dataclass(frozen=True, slots=True)
class LogLine:
    """One item of an execution stream.

    Output lines carry ``stdout``/``stderr``; the stream ends with a single
    ``exit`` item holding the command's exit code.
    """

    stream: str
    text: str = ""
    exit_code: int | None = None

    @classmethod
    def stdout(cls, text: str) -> LogLine:
        return cls(stream=STREAM_STDOUT, text=text)

    @classmethod
    def stderr(cls, text: str) -> LogLine:
        return cls(stream=STREAM_STDERR, text=text)

    @classmethod
    def exit(cls, exit_code: int) -> LogLine:
        return cls(stream=STREAM_EXIT, exit_code=exit_code)

    @property
    def is_exit(self) -> bool:
        return self.stream == STREAM_EXIT


class ProviderError(SwarmEngineError):
    """Provider call failed; ``retryable`` marks transport/5xx style failures."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class SandboxNotFoundError(ProviderError):
    """Provider no longer knows the sandbox."""

    def __init__(self, provider_ref: str) -> None:
        super().__init__(f"Sandbox not found: {provider_ref}")
        self.provider_ref = provider_ref


class ProviderAuthError(ProviderError, ConfigError):
    """Provider rejected our credentials; no task can ever be dispatched."""


class SandboxProvider(Protocol):
    """create/execute/destroy contract of an ephemeral sandbox backend."""

    name: str

    def create(self, snapshot: str) -> str:
        """Provision a sandbox from ``snapshot`` and return its provider reference."""

    def execute(
        self,
        provider_ref: str,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[LogLine]:
        """Run ``command`` and yield its output followed by one exit item."""

    def destroy(self, provider_ref: str) -> None:
        """Tear the sandbox down; unknown references raise SandboxNotFoundError."""

    def cancel(self, provider_ref: str) -> bool:
        """Abort commands still running in the sandbox.

        Returns True only when nothing of ours is left running there; False
        means the provider cannot confirm the abort and the sandbox must not
        be handed to another task.
        """

    def health(self) -> bool:
        """Return whether the provider API is reachable."""

    def close(self) -> None:
        """Release client resources."""
