"""Ralphloop agent runners — argv presets, executors, and error classification."""

from __future__ import annotations

import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Protocol

from ralphloop.constants import (
    DEFAULT_LOG_FILE,
    RATE_LIMIT_MARKERS,
    TIMEOUT_MARKERS,
)
from ralphloop.containers import ContainerManager
from ralphloop.models import (
    AgentConfig,
    AgentError,
    AgentRateLimitError,
    AgentTimeoutError,
    LoopConfig,
)
from ralphloop.utils import _append_log, _compact_log_text, _redact_sensitive_text

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_RATE_LIMIT = "rate limit"
ERROR_KIND_FATAL = "fatal"


class Executor(Protocol):
    def prepare(self, working_dir: Path) -> None: ...

    def execute(self, working_dir: Path, prompt: str) -> str: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Agent command presets
# ---------------------------------------------------------------------------


def _agent_argv(agent: AgentConfig) -> list[str]:
    if agent.provider == "cursor":
        argv = [agent.cursor_path, "-p"]
        if agent.cursor_model:
            argv.extend(["--model", agent.cursor_model])
        argv.extend(["--force", "--output-format", "text"])
        return argv
    argv = [agent.claude_path, "-p"]
    if agent.skip_permissions:
        argv.append("--dangerously-skip-permissions")
    if agent.claude_model:
        argv.extend(["--model", agent.claude_model])
    argv.extend(["--output-format", "text"])
    return argv


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _classify_agent_error(exc: BaseException) -> str:
    """Return ``timeout``, ``rate limit``, or ``fatal`` for an agent failure.

    Typed errors decide first; the substring scan only covers untyped errors
    raised by external tooling.
    """
    if isinstance(exc, AgentTimeoutError):
        return ERROR_KIND_TIMEOUT
    if isinstance(exc, AgentRateLimitError):
        return ERROR_KIND_RATE_LIMIT
    text = str(exc)
    if any(marker in text for marker in TIMEOUT_MARKERS):
        return ERROR_KIND_TIMEOUT
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ERROR_KIND_RATE_LIMIT
    return ERROR_KIND_FATAL


# ---------------------------------------------------------------------------
# Direct (unsandboxed) executor
# ---------------------------------------------------------------------------


class DirectExecutor:
    """Runs the agent as a local subprocess with the prompt on stdin."""

    def __init__(
        self,
        repo_root: Path,
        argv: list[str],
        *,
        timeout_seconds: float,
        show_progress: bool = True,
        max_capture_chars: int = 200_000,
        log_file: str = DEFAULT_LOG_FILE,
    ) -> None:
        self.repo_root = repo_root
        self.argv = list(argv)
        self.timeout_seconds = timeout_seconds
        self.show_progress = show_progress
        self.max_capture_chars = max_capture_chars
        self.log_file = log_file

    def _pump_stream(self, stream: Any, sink: Any, captured: list[str], captured_len: list[int]) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                if self.show_progress:
                    sink.write(line)
                    sink.flush()
                if captured_len[0] < self.max_capture_chars:
                    snippet = line[: self.max_capture_chars - captured_len[0]]
                    captured.append(snippet)
                    captured_len[0] += len(snippet)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def execute(self, working_dir: Path, prompt: str) -> str:
        _append_log(
            self.repo_root,
            f"agent direct start cwd={working_dir} command={_redact_sensitive_text(' '.join(self.argv))}",
            log_file=self.log_file,
        )
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        stdout_len = [0]
        stderr_len = [0]
        try:
            process = subprocess.Popen(
                self.argv,
                cwd=working_dir,
                shell=False,
                text=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
            )
        except OSError as exc:
            raise AgentError(f"failed to start agent '{self.argv[0]}': {exc}") from exc

        stdout_thread = threading.Thread(
            target=self._pump_stream,
            args=(process.stdout, sys.stdout, stdout_chunks, stdout_len),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=self._pump_stream,
            args=(process.stderr, sys.stderr, stderr_chunks, stderr_len),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()
        if process.stdin is not None:
            try:
                process.stdin.write(prompt)
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

        try:
            returncode = process.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            _append_log(
                self.repo_root,
                f"agent direct timeout timeout_seconds={int(self.timeout_seconds)}",
                log_file=self.log_file,
            )
            process.terminate()
            try:
                process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            raise AgentTimeoutError(
                f"Agent timed out after {int(self.timeout_seconds)} seconds"
            )
        finally:
            stdout_thread.join(timeout=2)
            stderr_thread.join(timeout=2)

        stdout_text = "".join(stdout_chunks)
        stderr_text = "".join(stderr_chunks)
        if returncode != 0:
            detail = stderr_text.strip() or stdout_text.strip()
            raise AgentError(
                f"Agent exited with code {returncode}: {_compact_log_text(detail, limit=2000)}"
            )
        return stdout_text + stderr_text

    def prepare(self, working_dir: Path) -> None:
        return None

    def close(self) -> None:
        return None


def _build_executor(
    repo_root: Path,
    config: LoopConfig,
    *,
    no_sandbox: bool = False,
) -> Executor:
    argv = _agent_argv(config.agent)
    if no_sandbox or not config.sandbox.enabled:
        return DirectExecutor(
            repo_root,
            argv,
            timeout_seconds=config.timeout_seconds(),
            show_progress=config.monitoring.show_progress,
            log_file=config.monitoring.log_file,
        )
    return ContainerManager(repo_root, config, argv)
