from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

from ralphloop.constants import (
    AGENT_PROVIDERS,
    CONFIG_FILE_NAME,
    DEFAULT_AGENT_PROVIDER,
    DEFAULT_CLAUDE_MODEL,
    DEFAULT_CLAUDE_PATH,
    DEFAULT_CPU_LIMIT,
    DEFAULT_CREDENTIAL_MOUNTS,
    DEFAULT_CURSOR_PATH,
    DEFAULT_DNS_SERVERS,
    DEFAULT_IDLE_THRESHOLD,
    DEFAULT_LOG_FILE,
    DEFAULT_MAX_CONSECUTIVE_ERRORS,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_NETWORK_POLICY,
    DEFAULT_PROTECTED_BRANCHES,
    DEFAULT_SANDBOX_IMAGE,
    DEFAULT_TIMEOUT_MINUTES,
    DEFAULT_VALIDATION_COMMAND,
    NETWORK_POLICIES,
    PROVIDER_ENV_VAR,
)
from ralphloop.models import (
    AgentConfig,
    CompletionConfig,
    ConfigError,
    GitConfig,
    LoopConfig,
    MonitoringConfig,
    MountConfig,
    NetworkConfig,
    NotificationConfig,
    ResourceConfig,
    SandboxConfig,
    ValidationConfig,
    WorktreeConfig,
    _coerce_bool,
    _coerce_non_negative_int,
    _coerce_positive_int,
)

_MEMORY_PATTERN = re.compile(r"^(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>[kmgt]?)b?$", re.IGNORECASE)
_MEMORY_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
}


def _parse_memory_limit(value: str) -> int:
    """Convert a human memory size such as ``8g`` or ``512m`` into bytes."""
    text = str(value).strip()
    match = _MEMORY_PATTERN.match(text)
    if not match:
        raise ConfigError(f"invalid memory limit: '{value}'")
    amount = float(match.group("amount"))
    multiplier = _MEMORY_MULTIPLIERS[match.group("unit").lower()]
    return int(amount * multiplier)


def _parse_cpus(value: str) -> int:
    """Convert a CPU count such as ``4`` or ``1.5`` into docker nano-cpus."""
    try:
        cpus = float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"invalid cpu limit: '{value}'") from exc
    if cpus <= 0:
        raise ConfigError(f"cpu limit must be positive: '{value}'")
    return int(cpus * 1_000_000_000)


def _load_config_payload(repo_root: Path) -> dict[str, Any]:
    config_path = repo_root / CONFIG_FILE_NAME
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} is not valid YAML: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"{config_path} could not be read: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return loaded


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{CONFIG_FILE_NAME}: '{key}' must be a mapping")
    return value


def _string_list(value: Any, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{CONFIG_FILE_NAME}: '{key}' must be a list")
    items: list[str] = []
    for entry in value:
        candidate = str(entry).strip()
        if candidate:
            items.append(candidate)
    return tuple(items)


def _parse_agent_config(payload: dict[str, Any], provider_override: str | None) -> AgentConfig:
    agent = _section(payload, "agent")
    provider = (
        provider_override
        or os.environ.get(PROVIDER_ENV_VAR, "")
        or str(agent.get("provider", DEFAULT_AGENT_PROVIDER))
    ).strip().lower()
    if provider not in AGENT_PROVIDERS:
        raise ConfigError(
            f"agent.provider must be one of {list(AGENT_PROVIDERS)}, got '{provider}'"
        )
    claude = _section(agent, "claude")
    cursor = _section(agent, "cursor")
    provider_section = claude if provider == "claude" else cursor
    raw_timeout = provider_section.get("timeout_minutes")
    timeout_minutes = (
        _coerce_positive_int(raw_timeout, default=DEFAULT_TIMEOUT_MINUTES)
        if raw_timeout is not None
        else None
    )
    return AgentConfig(
        provider=provider,
        claude_path=str(claude.get("path", DEFAULT_CLAUDE_PATH)).strip() or DEFAULT_CLAUDE_PATH,
        claude_model=str(claude.get("model", DEFAULT_CLAUDE_MODEL)).strip(),
        skip_permissions=_coerce_bool(claude.get("skip_permissions"), default=True),
        cursor_path=str(cursor.get("path", DEFAULT_CURSOR_PATH)).strip() or DEFAULT_CURSOR_PATH,
        cursor_model=str(cursor.get("model", "") or "").strip(),
        timeout_minutes=timeout_minutes,
    )


def _parse_mounts(value: Any, *, key: str) -> tuple[MountConfig, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{CONFIG_FILE_NAME}: '{key}' must be a list")
    mounts: list[MountConfig] = []
    for entry in value:
        if not isinstance(entry, dict):
            raise ConfigError(f"{CONFIG_FILE_NAME}: '{key}' entries must be mappings")
        source = str(entry.get("source", "")).strip()
        target = str(entry.get("target", "")).strip()
        if not source or not target:
            raise ConfigError(f"{CONFIG_FILE_NAME}: '{key}' entries need source and target")
        mounts.append(
            MountConfig(
                source=source,
                target=target,
                readonly=_coerce_bool(entry.get("readonly"), default=False),
            )
        )
    return tuple(mounts)


def _parse_sandbox_config(payload: dict[str, Any]) -> SandboxConfig:
    sandbox = _section(payload, "sandbox")
    network = _section(sandbox, "network")
    resources = _section(sandbox, "resources")

    policy = str(network.get("policy", DEFAULT_NETWORK_POLICY)).strip().lower()
    if policy not in NETWORK_POLICIES:
        raise ConfigError(
            f"sandbox.network.policy must be one of {list(NETWORK_POLICIES)}, got '{policy}'"
        )
    dns = _string_list(network.get("dns"), key="sandbox.network.dns") or DEFAULT_DNS_SERVERS

    memory = str(resources.get("memory", DEFAULT_MEMORY_LIMIT)).strip()
    cpus = str(resources.get("cpus", DEFAULT_CPU_LIMIT)).strip()
    # Raises ConfigError on malformed limits.
    _parse_memory_limit(memory)
    _parse_cpus(cpus)

    if "credential_mounts" in sandbox:
        credential_mounts = _parse_mounts(
            sandbox.get("credential_mounts"), key="sandbox.credential_mounts"
        )
    else:
        credential_mounts = tuple(
            MountConfig(source=source, target=target, readonly=True)
            for source, target in DEFAULT_CREDENTIAL_MOUNTS
        )

    return SandboxConfig(
        enabled=_coerce_bool(sandbox.get("enabled"), default=True),
        image=str(sandbox.get("image", DEFAULT_SANDBOX_IMAGE)).strip() or DEFAULT_SANDBOX_IMAGE,
        reuse_container=_coerce_bool(sandbox.get("reuse_container"), default=False),
        mounts=_parse_mounts(sandbox.get("mounts"), key="sandbox.mounts"),
        credential_mounts=credential_mounts,
        network=NetworkConfig(
            policy=policy,
            allowed=_string_list(network.get("allowed"), key="sandbox.network.allowed"),
            dns=dns,
        ),
        resources=ResourceConfig(
            memory=memory,
            cpus=cpus,
            timeout_minutes=_coerce_positive_int(
                resources.get("timeout_minutes"), default=DEFAULT_TIMEOUT_MINUTES
            ),
        ),
    )


def _parse_monitoring_config(payload: dict[str, Any]) -> MonitoringConfig:
    monitoring = _section(payload, "monitoring")
    notifications = _section(monitoring, "notifications")
    return MonitoringConfig(
        log_file=str(monitoring.get("log_file", DEFAULT_LOG_FILE)).strip() or DEFAULT_LOG_FILE,
        show_progress=_coerce_bool(monitoring.get("show_progress"), default=True),
        max_consecutive_errors=_coerce_non_negative_int(
            monitoring.get("max_consecutive_errors"), default=DEFAULT_MAX_CONSECUTIVE_ERRORS
        ),
        notifications=NotificationConfig(
            on_complete=str(notifications.get("on_complete", "none") or "none").strip(),
            on_error=str(notifications.get("on_error", "none") or "none").strip(),
        ),
    )


def _load_config(repo_root: Path, *, provider_override: str | None = None) -> LoopConfig:
    payload = _load_config_payload(repo_root)
    git = _section(payload, "git")
    completion = _section(payload, "completion")
    validation = _section(payload, "validation")
    worktree = _section(payload, "worktree")

    protected = _string_list(git.get("protected_branches"), key="git.protected_branches")
    if "protected_branches" not in git:
        protected = DEFAULT_PROTECTED_BRANCHES

    return LoopConfig(
        agent=_parse_agent_config(payload, provider_override),
        sandbox=_parse_sandbox_config(payload),
        git=GitConfig(
            auto_push=_coerce_bool(git.get("auto_push"), default=True),
            protected_branches=protected,
        ),
        completion=CompletionConfig(
            idle_threshold=_coerce_positive_int(
                completion.get("idle_threshold"), default=DEFAULT_IDLE_THRESHOLD
            ),
        ),
        monitoring=_parse_monitoring_config(payload),
        validation=ValidationConfig(
            enabled=_coerce_bool(validation.get("enabled"), default=False),
            command=str(validation.get("command", DEFAULT_VALIDATION_COMMAND)).strip(),
        ),
        worktree=WorktreeConfig(
            name=str(worktree.get("name", "") or "").strip(),
            email=str(worktree.get("email", "") or "").strip(),
            signing_key=str(worktree.get("signing_key", "") or "").strip(),
            ssh_key=str(worktree.get("ssh_key", "") or "").strip(),
            create_pr=_coerce_bool(worktree.get("create_pr"), default=False),
        ),
    )
