"""Ralphloop data models — exceptions, config dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ralphloop.constants import OUTCOME_FATAL


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed >= 0 else default


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StateError(RuntimeError):
    """Raised when loop state cannot be loaded or validated."""


class ConfigError(RuntimeError):
    """Raised when ralph.yaml is malformed."""


class LoopError(RuntimeError):
    """Raised when the loop hits a non-recoverable failure."""


class GitError(RuntimeError):
    """Raised when a git plumbing command fails."""


class AgentError(RuntimeError):
    """Raised when the agent process fails."""


class AgentTimeoutError(AgentError):
    """Raised when the agent does not finish within its timeout."""


class AgentRateLimitError(AgentError):
    """Raised when the agent provider rejects a call for rate limiting."""


class SandboxError(RuntimeError):
    """Base class for container lifecycle failures."""


class DockerUnavailableError(SandboxError):
    pass


class ImageNotFoundError(SandboxError):
    pass


class SandboxTimeoutError(SandboxError, AgentTimeoutError):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Container execution timed out after {int(seconds)} seconds")
        self.seconds = seconds


class ContainerUnhealthyError(SandboxError):
    pass


class NetworkSetupError(SandboxError):
    pass


class ContainerFailedError(SandboxError):
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfig:
    provider: str = "claude"
    claude_path: str = "claude"
    claude_model: str = "opus"
    skip_permissions: bool = True
    cursor_path: str = "agent"
    cursor_model: str = ""
    timeout_minutes: int | None = None


@dataclass(frozen=True)
class NetworkConfig:
    policy: str = "allow-all"
    allowed: tuple[str, ...] = ()
    dns: tuple[str, ...] = ("8.8.8.8", "1.1.1.1")


@dataclass(frozen=True)
class ResourceConfig:
    memory: str = "8g"
    cpus: str = "4"
    timeout_minutes: int = 60


@dataclass(frozen=True)
class MountConfig:
    source: str
    target: str
    readonly: bool = False


@dataclass(frozen=True)
class SandboxConfig:
    enabled: bool = True
    image: str = "ralph:latest"
    reuse_container: bool = False
    mounts: tuple[MountConfig, ...] = ()
    credential_mounts: tuple[MountConfig, ...] = ()
    network: NetworkConfig = field(default_factory=NetworkConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)


@dataclass(frozen=True)
class GitConfig:
    auto_push: bool = True
    protected_branches: tuple[str, ...] = ("main", "master", "production")


@dataclass(frozen=True)
class CompletionConfig:
    idle_threshold: int = 2


@dataclass(frozen=True)
class NotificationConfig:
    on_complete: str = "none"
    on_error: str = "none"


@dataclass(frozen=True)
class MonitoringConfig:
    log_file: str = ".ralph/logs/loop.log"
    show_progress: bool = True
    max_consecutive_errors: int = 5
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


@dataclass(frozen=True)
class ValidationConfig:
    enabled: bool = False
    command: str = "nix flake check --quiet"


@dataclass(frozen=True)
class WorktreeConfig:
    name: str = ""
    email: str = ""
    signing_key: str = ""
    ssh_key: str = ""
    create_pr: bool = False


@dataclass(frozen=True)
class LoopConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    git: GitConfig = field(default_factory=GitConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)

    def timeout_seconds(self) -> float:
        minutes = self.agent.timeout_minutes or self.sandbox.resources.timeout_minutes
        return float(minutes) * 60.0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoopOutcome:
    reason: str
    final_iteration: int
    error_count: int
    message: str
    invocations: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.reason == OUTCOME_FATAL else 0


@dataclass(frozen=True)
class BranchSection:
    name: str
    goal: str
    base: str


@dataclass(frozen=True)
class BranchResult:
    branch: str
    success: bool
    iterations: int
    error: str | None = None
    pr_url: str | None = None


@dataclass(frozen=True)
class NotificationDetails:
    iteration: int
    message: str
    timestamp: str
    context: str | None = None
