from __future__ import annotations

import signal
from pathlib import Path

import allure
import pytest

from swarm_engine.orchestrator.provider.base import LogLine, SandboxNotFoundError
from swarm_engine.orchestrator.provider.local import TIMEOUT_EXIT_CODE, LocalSandboxProvider

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Sandbox Providers"),
]


def test_execute_streams_both_pipes_and_exit_code(tmp_path: Path) -> None:
    provider = LocalSandboxProvider(root=tmp_path)
    ref = provider.create("swarm-lite-v1")

    stream = list(
        provider.execute(
            ref,
            'echo "$GREETING from $(basename "$PWD")"; echo oops >&2; exit 5',
            env={"GREETING": "hello"},
        ),
    )

    assert LogLine.stdout(f"hello from {ref}") in stream
    assert LogLine.stderr("oops") in stream
    assert stream[-1] == LogLine.exit(5)
    assert (tmp_path / ref / ".snapshot").read_text("utf-8") == "swarm-lite-v1"


def test_relative_cwd_is_created_inside_the_workspace(tmp_path: Path) -> None:
    provider = LocalSandboxProvider(root=tmp_path)
    ref = provider.create("snap")

    stream = list(provider.execute(ref, "pwd", cwd="repo"))

    assert stream == [LogLine.stdout(str(tmp_path / ref / "repo")), LogLine.exit(0)]


def test_timeout_kills_the_command(tmp_path: Path) -> None:
    provider = LocalSandboxProvider(root=tmp_path)
    ref = provider.create("snap")

    stream = list(provider.execute(ref, "echo started; sleep 30", timeout_seconds=0.5))

    assert stream[0] == LogLine.stdout("started")
    assert stream[-1] == LogLine.exit(TIMEOUT_EXIT_CODE)
    assert "timed out" in stream[-2].text


def test_destroy_removes_the_workspace(tmp_path: Path) -> None:
    provider = LocalSandboxProvider(root=tmp_path)
    ref = provider.create("snap")
    assert provider.health()

    provider.destroy(ref)

    assert not (tmp_path / ref).exists()
    with pytest.raises(SandboxNotFoundError):
        provider.destroy(ref)
    with pytest.raises(SandboxNotFoundError):
        provider.execute(ref, "true")


def test_cancel_stops_the_running_command(tmp_path: Path) -> None:
    provider = LocalSandboxProvider(root=tmp_path)
    ref = provider.create("snap")
    assert provider.cancel(ref) is True

    stream = provider.execute(ref, "sleep 30")

    assert provider.cancel(ref) is True
    assert list(stream)[-1] == LogLine.exit(-signal.SIGTERM)
