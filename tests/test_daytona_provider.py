from __future__ import annotations

import json

import allure
import httpx
import pytest

from swarm_engine.orchestrator.provider.base import (
    LogLine,
    ProviderAuthError,
    ProviderError,
    SandboxNotFoundError,
)
from swarm_engine.orchestrator.provider.daytona import DaytonaProvider, build_command

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Sandbox Providers"),
]


def _provider(handler: httpx.MockTransport) -> DaytonaProvider:
    return DaytonaProvider(api_url="https://daytona.test/", api_key="dtn-key", transport=handler)


def test_create_posts_snapshot_with_bearer_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "sbx-42"})

    with _provider(httpx.MockTransport(handler)) as provider:
        assert provider.create("swarm-lite-v1") == "sbx-42"

    [request] = seen
    assert request.method == "POST"
    assert request.url == "https://daytona.test/api/sandbox"
    assert request.headers["Authorization"] == "Bearer dtn-key"
    assert json.loads(request.content) == {
        "snapshot": "swarm-lite-v1",
        "target": "us",
        "autoStopInterval": 60,
    }


def test_create_without_id_is_an_error() -> None:
    provider = _provider(httpx.MockTransport(lambda _: httpx.Response(200, json={})))

    with pytest.raises(ProviderError, match="no sandbox id"):
        provider.create("snap")
    provider.close()


def test_execute_replays_output_and_exit_code() -> None:
    seen: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/api/toolbox/sbx-1/toolbox/process/execute"
        return httpx.Response(
            200,
            json={"exitCode": 3, "result": "line one\nline two\n", "stderr": "bad thing"},
        )

    provider = _provider(httpx.MockTransport(handler))
    stream = list(
        provider.execute(
            "sbx-1",
            "echo hi && exit 3",
            env={"ANTHROPIC_API_KEY": "sk-ant-1"},
            cwd="/workspace",
            timeout_seconds=90,
        ),
    )
    provider.close()

    assert stream == [
        LogLine.stdout("line one"),
        LogLine.stdout("line two"),
        LogLine.stderr("bad thing"),
        LogLine.exit(3),
    ]
    assert seen == [
        {
            "command": "ANTHROPIC_API_KEY=sk-ant-1 bash -c 'echo hi && exit 3'",
            "cwd": "/workspace",
            "timeout": 90,
        },
    ]


def test_execute_reads_artifacts_when_result_is_missing() -> None:
    provider = _provider(
        httpx.MockTransport(
            lambda _: httpx.Response(200, json={"exitCode": 0, "artifacts": {"stdout": "ok"}}),
        ),
    )

    assert list(provider.execute("sbx-1", "true")) == [LogLine.stdout("ok"), LogLine.exit(0)]
    provider.close()


@pytest.mark.parametrize(
    ("status", "error_type", "retryable"),
    [
        (401, ProviderAuthError, False),
        (403, ProviderAuthError, False),
        (404, SandboxNotFoundError, False),
        (400, ProviderError, False),
        (503, ProviderError, True),
    ],
)
def test_http_errors_are_mapped(
    status: int,
    error_type: type[ProviderError],
    retryable: bool,
) -> None:
    provider = _provider(
        httpx.MockTransport(lambda _: httpx.Response(status, text="upstream said no")),
    )

    with pytest.raises(error_type) as caught:
        provider.destroy("sbx-9")
    provider.close()

    assert caught.value.retryable is retryable


def test_transport_failures_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(httpx.MockTransport(handler))

    with pytest.raises(ProviderError) as caught:
        provider.create("snap")
    provider.close()

    assert caught.value.retryable
    assert "transport error" in str(caught.value)


@pytest.mark.parametrize(
    ("status", "healthy"),
    [(200, True), (404, True), (401, False), (502, False)],
)
def test_health(status: int, healthy: bool) -> None:
    provider = _provider(httpx.MockTransport(lambda _: httpx.Response(status)))

    assert provider.health() is healthy
    provider.close()


def test_build_command_wraps_compound_commands_only() -> None:
    assert build_command("claude --print hi") == "claude --print hi"
    assert build_command("make test | tail -5") == "bash -c 'make test | tail -5'"
    assert build_command("run", env={"A": "x y", "B": "1"}) == "A='x y' B=1 run"


def test_cancel_cannot_abort_a_remote_command() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    with _provider(httpx.MockTransport(handler)) as provider:
        assert provider.cancel("sbx-42") is False

    assert seen == []
