from __future__ import annotations

import sys
from pathlib import Path

import pytest

from ralphloop.containers import ContainerManager
from ralphloop.models import (
    AgentConfig,
    AgentError,
    AgentRateLimitError,
    AgentTimeoutError,
    LoopConfig,
    MonitoringConfig,
    SandboxConfig,
    SandboxTimeoutError,
)
from ralphloop.runners import (
    ERROR_KIND_FATAL,
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_TIMEOUT,
    DirectExecutor,
    _agent_argv,
    _build_executor,
    _classify_agent_error,
)


def test_claude_argv_preset() -> None:
    argv = _agent_argv(AgentConfig())

    assert argv == [
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "--model",
        "opus",
        "--output-format",
        "text",
    ]


def test_claude_argv_without_skip_permissions() -> None:
    argv = _agent_argv(AgentConfig(skip_permissions=False, claude_model=""))

    assert argv == ["claude", "-p", "--output-format", "text"]


def test_cursor_argv_preset() -> None:
    assert _agent_argv(AgentConfig(provider="cursor")) == ["agent", "-p", "--force", "--output-format", "text"]
    assert _agent_argv(AgentConfig(provider="cursor", cursor_model="gpt-5")) == [
        "agent",
        "-p",
        "--model",
        "gpt-5",
        "--force",
        "--output-format",
        "text",
    ]


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (AgentTimeoutError("slow"), ERROR_KIND_TIMEOUT),
        (SandboxTimeoutError(60), ERROR_KIND_TIMEOUT),
        (AgentRateLimitError("busy"), ERROR_KIND_RATE_LIMIT),
        (RuntimeError("request timed out"), ERROR_KIND_TIMEOUT),
        (RuntimeError("HTTP 429 Too Many Requests"), ERROR_KIND_RATE_LIMIT),
        (RuntimeError("RESOURCE_EXHAUSTED: resource_exhausted"), ERROR_KIND_RATE_LIMIT),
        (RuntimeError("monthly Quota exceeded"), ERROR_KIND_RATE_LIMIT),
        (AgentError("Agent exited with code 2: syntax error"), ERROR_KIND_FATAL),
    ],
)
def test_classify_agent_error(exc: BaseException, expected: str) -> None:
    assert _classify_agent_error(exc) == expected


def test_direct_executor_feeds_prompt_on_stdin(tmp_path: Path) -> None:
    executor = DirectExecutor(
        tmp_path,
        [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"],
        timeout_seconds=30,
        show_progress=False,
    )

    assert executor.execute(tmp_path, "study the plan\n") == "STUDY THE PLAN\n"


def test_direct_executor_nonzero_exit(tmp_path: Path) -> None:
    executor = DirectExecutor(
        tmp_path,
        [sys.executable, "-c", "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"],
        timeout_seconds=30,
        show_progress=False,
    )

    with pytest.raises(AgentError, match="Agent exited with code 3: boom"):
        executor.execute(tmp_path, "")


def test_direct_executor_timeout(tmp_path: Path) -> None:
    executor = DirectExecutor(
        tmp_path,
        [sys.executable, "-c", "import time; time.sleep(30)"],
        timeout_seconds=0.5,
        show_progress=False,
    )

    with pytest.raises(AgentTimeoutError) as excinfo:
        executor.execute(tmp_path, "")
    assert _classify_agent_error(excinfo.value) == ERROR_KIND_TIMEOUT


def test_direct_executor_missing_binary(tmp_path: Path) -> None:
    executor = DirectExecutor(tmp_path, [str(tmp_path / "no-such-agent")], timeout_seconds=5, show_progress=False)

    with pytest.raises(AgentError, match="failed to start agent"):
        executor.execute(tmp_path, "")


def test_build_executor_passes_configured_log_file(tmp_path: Path) -> None:
    config = LoopConfig(monitoring=MonitoringConfig(log_file="agent.log", show_progress=False))
    executor = _build_executor(tmp_path, config, no_sandbox=True)
    assert isinstance(executor, DirectExecutor)
    executor.argv = [sys.executable, "-c", "pass"]

    executor.execute(tmp_path, "")

    assert "agent direct start" in (tmp_path / "agent.log").read_text(encoding="utf-8")
    assert not (tmp_path / ".ralph" / "logs" / "loop.log").exists()


def test_build_executor_selects_runner(tmp_path: Path) -> None:
    assert isinstance(_build_executor(tmp_path, LoopConfig(), no_sandbox=True), DirectExecutor)
    assert isinstance(
        _build_executor(tmp_path, LoopConfig(sandbox=SandboxConfig(enabled=False))),
        DirectExecutor,
    )
    assert isinstance(_build_executor(tmp_path, LoopConfig()), ContainerManager)
