"""Daytona sandbox provider over the Daytona REST API."""

from __future__ import annotations

import logging
import shlex
from collections.abc import Iterator, Mapping
from typing import Any

import httpx

from swarm_engine.orchestrator.provider.base import (
    LogLine,
    ProviderAuthError,
    ProviderError,
    SandboxNotFoundError,
)
from swarm_engine.orchestrator.sanitization import mask_env, sanitize_text, secret_values

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_CWD = "/home/daytona"
DEFAULT_COMMAND_TIMEOUT_SECONDS = 60
_COMPOUND_MARKERS = ("|", "&&", "||", ";", "`", "$(")


class DaytonaProvider:
    """Create/execute/destroy sandboxes through Daytona with bearer auth."""

    name = "daytona"

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_url: str,
        api_key: str,
        target: str = "us",
        auto_stop_interval_minutes: int = 60,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.target = target
        self.auto_stop_interval_minutes = auto_stop_interval_minutes
        self._request_timeout_seconds = timeout_seconds
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._client = httpx.Client(
            base_url=self.api_url,
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )
        logger.info("Daytona provider initialized for %s", self.api_url)

    def create(self, snapshot: str) -> str:
        logger.info("Creating Daytona sandbox from snapshot %s", snapshot)
        payload = self._request_json(
            "POST",
            "/api/sandbox",
            json={
                "snapshot": snapshot,
                "target": self.target,
                "autoStopInterval": self.auto_stop_interval_minutes,
            },
        )
        sandbox_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(sandbox_id, str) or not sandbox_id:
            raise ProviderError("Daytona create response has no sandbox id.")
        logger.info("Daytona sandbox %s created", sandbox_id)
        return sandbox_id

    def execute(
        self,
        provider_ref: str,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[LogLine]:
        """Run the command through the toolbox API.

        The toolbox call is synchronous, so output arrives in one piece and is
        replayed line by line before the exit item.
        """

        final_command = build_command(command, env=env)
        logger.debug(
            "Executing in sandbox %s: %s (env=%s)",
            provider_ref,
            sanitize_text(command, secrets=secret_values(env or {}), max_chars=500),
            mask_env(env or {}),
        )
        command_timeout = int(timeout_seconds or DEFAULT_COMMAND_TIMEOUT_SECONDS)
        payload = self._request_json(
            "POST",
            f"/api/toolbox/{provider_ref}/toolbox/process/execute",
            json={
                "command": final_command,
                "cwd": cwd or DEFAULT_CWD,
                "timeout": command_timeout,
            },
            timeout=httpx.Timeout(command_timeout + self._request_timeout_seconds, connect=10.0),
            provider_ref=provider_ref,
        )
        if not isinstance(payload, dict) or "exitCode" not in payload:
            raise ProviderError("Daytona execute response has no exit code.")
        artifacts = payload.get("artifacts") or {}
        stdout = payload.get("result") or artifacts.get("stdout") or ""
        stderr = payload.get("stderr") or artifacts.get("stderr") or ""
        return _replay(stdout=stdout, stderr=stderr, exit_code=int(payload["exitCode"]))

    def destroy(self, provider_ref: str) -> None:
        logger.info("Deleting Daytona sandbox %s", provider_ref)
        self._send("DELETE", f"/api/sandbox/{provider_ref}", provider_ref=provider_ref)

    def cancel(self, provider_ref: str) -> bool:
        # The toolbox execute call cannot be interrupted remotely.
        logger.debug("Cancel requested for Daytona sandbox %s; cannot abort remotely", provider_ref)
        return False

    def health(self) -> bool:
        try:
            self._send("GET", "/api/health")
        except ProviderAuthError:
            return False
        except ProviderError as exc:
            if not exc.retryable:
                # A 4xx answer still means the API is reachable.
                return True
            logger.warning("Daytona health check failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DaytonaProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: httpx.Timeout | None = None,
        provider_ref: str | None = None,
    ) -> Any:
        response = self._send(method, path, json=json, timeout=timeout, provider_ref=provider_ref)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"Daytona returned invalid JSON for {method} {path}") from exc

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: httpx.Timeout | None = None,
        provider_ref: str | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                path,
                json=json,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Daytona request timed out: {method} {path}",
                retryable=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Daytona transport error: {method} {path}: {exc}",
                retryable=True,
            ) from exc

        if response.is_success:
            return response
        status = response.status_code
        if status in {401, 403}:
            raise ProviderAuthError(f"Daytona rejected credentials (HTTP {status}).")
        if status == 404 and provider_ref is not None:
            raise SandboxNotFoundError(provider_ref)
        body = sanitize_text(response.text, max_chars=500)
        raise ProviderError(
            f"Daytona HTTP {status} for {method} {path}: {body}",
            retryable=status >= 500,
        )


def build_command(command: str, *, env: Mapping[str, str] | None = None) -> str:
    """Shell-safe command line: compound commands run under ``bash -c``, env inline."""

    final_command = command
    if any(marker in command for marker in _COMPOUND_MARKERS):
        final_command = f"bash -c {shlex.quote(command)}"
    if env:
        prefix = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
        final_command = f"{prefix} {final_command}"
    return final_command


def _replay(*, stdout: str, stderr: str, exit_code: int) -> Iterator[LogLine]:
    for line in stdout.splitlines():
        yield LogLine.stdout(line)
    for line in stderr.splitlines():
        yield LogLine.stderr(line)
    yield LogLine.exit(exit_code)
