"""Local sandbox provider: one workspace directory per sandbox, subprocess execution."""

from __future__ import annotations

import logging
import os
import queue
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import IO
from uuid import uuid4

from swarm_engine.orchestrator.provider.base import (
    STREAM_STDERR,
    STREAM_STDOUT,
    LogLine,
    ProviderError,
    SandboxNotFoundError,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_POLL_SECONDS = 0.1


class LocalSandboxProvider:
    """Runs commands with the host shell inside per-sandbox workspace directories.

    Meant for development and tests; there is no isolation beyond the
    working directory.
    """

    name = "local"

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or Path(tempfile.gettempdir()) / "swarm-engine-sandboxes"
        self._lock = threading.Lock()
        self._processes: dict[str, set[subprocess.Popen[str]]] = {}

    def create(self, snapshot: str) -> str:
        provider_ref = f"local-{uuid4().hex[:12]}"
        workspace = self._workspace(provider_ref)
        try:
            workspace.mkdir(parents=True, exist_ok=False)
            (workspace / ".snapshot").write_text(snapshot, "utf-8")
        except OSError as error:
            raise ProviderError(f"Cannot create local sandbox: {error}") from error
        logger.info("Local sandbox %s created at %s", provider_ref, workspace)
        return provider_ref

    def execute(
        self,
        provider_ref: str,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[LogLine]:
        workspace = self._workspace(provider_ref)
        if not workspace.is_dir():
            raise SandboxNotFoundError(provider_ref)
        run_dir = workspace
        if cwd and not Path(cwd).is_absolute():
            run_dir = workspace / cwd
            run_dir.mkdir(parents=True, exist_ok=True)

        process_env = os.environ.copy()
        process_env.update(env or {})
        try:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                cwd=run_dir,
                env=process_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as error:
            raise ProviderError(f"Local sandbox failed to start command: {error}") from error
        with self._lock:
            self._processes.setdefault(provider_ref, set()).add(process)
        return self._stream(provider_ref, process, timeout_seconds)

    def destroy(self, provider_ref: str) -> None:
        workspace = self._workspace(provider_ref)
        if not workspace.exists():
            raise SandboxNotFoundError(provider_ref)
        self.cancel(provider_ref)
        shutil.rmtree(workspace, ignore_errors=True)
        logger.info("Local sandbox %s destroyed", provider_ref)

    def cancel(self, provider_ref: str) -> bool:
        with self._lock:
            running = list(self._processes.get(provider_ref, ()))
        for process in running:
            _terminate_process(process)
        return all(process.poll() is not None for process in running)

    def health(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.root, os.W_OK)

    def close(self) -> None:
        with self._lock:
            refs = list(self._processes)
        for provider_ref in refs:
            self.cancel(provider_ref)

    def _workspace(self, provider_ref: str) -> Path:
        return self.root / provider_ref

    def _stream(
        self,
        provider_ref: str,
        process: subprocess.Popen[str],
        timeout_seconds: float | None,
    ) -> Iterator[LogLine]:
        lines: queue.Queue[tuple[str, str] | None] = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, STREAM_STDOUT, lines),
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, STREAM_STDERR, lines),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        open_streams = len(readers)
        timed_out = False
        try:
            while open_streams:
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    _terminate_process(process)
                    break
                try:
                    item = lines.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    continue
                if item is None:
                    open_streams -= 1
                    continue
                stream, text = item
                yield LogLine(stream=stream, text=text)
            if timed_out:
                yield LogLine.stderr(f"Command timed out after {timeout_seconds:g} seconds")
                yield LogLine.exit(TIMEOUT_EXIT_CODE)
                return
            yield LogLine.exit(process.wait())
        finally:
            if process.poll() is None:
                _terminate_process(process)
            with self._lock:
                self._processes.get(provider_ref, set()).discard(process)


def _pump(pipe: IO[str] | None, stream: str, lines: queue.Queue[tuple[str, str] | None]) -> None:
    if pipe is None:
        lines.put(None)
        return
    try:
        for raw in pipe:
            lines.put((stream, raw.rstrip("\n")))
    finally:
        pipe.close()
        lines.put(None)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except OSError:
            return
        process.wait(timeout=2)
