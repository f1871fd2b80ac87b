"""Deterministic classification of failed attempts for events and sandbox handling."""

from __future__ import annotations

from dataclasses import dataclass

from swarm_engine.orchestrator.models import FailureClass
from swarm_engine.orchestrator.provider.base import (
    ProviderAuthError,
    ProviderError,
    SandboxNotFoundError,
)

FAILURE_CLASSIFIER_VERSION = 1

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
    "try again later",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def sandbox_lost(self) -> bool:
        return self.failure_class == FailureClass.SANDBOX_LOST

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_error(error: ProviderError) -> FailureClassification:
    """Classify an exception raised by a sandbox provider call."""

    if isinstance(error, SandboxNotFoundError):
        return FailureClassification(FailureClass.SANDBOX_LOST, "sandbox_not_found")
    if isinstance(error, ProviderAuthError):
        return FailureClassification(FailureClass.ACCESS_OR_AUTH, "provider_auth")
    if error.retryable:
        return FailureClassification(FailureClass.PROVIDER_TRANSIENT, "provider_retryable")
    return FailureClassification(FailureClass.PROVIDER_NON_RETRYABLE, "provider_error")


def classify_exit(*, exit_code: int, output: str) -> FailureClassification:
    """Classify a non-zero exit of the agent command from its output tail."""

    haystack = output.lower()
    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.PROVIDER_TRANSIENT, "agent_transient", pattern)
    if exit_code in {124, 137}:
        return FailureClassification(FailureClass.TIMEOUT, "timeout_exit_code")
    return FailureClassification(FailureClass.AGENT_EXIT, "non_zero_exit")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
