from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ralphloop.config import _load_config, _parse_cpus, _parse_memory_limit
from ralphloop.models import ConfigError


def _write_config(repo: Path, payload: dict) -> None:
    (repo / "ralph.yaml").write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_load_config_defaults_without_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_PROVIDER", raising=False)

    config = _load_config(tmp_path)

    assert config.agent.provider == "claude"
    assert config.agent.claude_model == "opus"
    assert config.sandbox.enabled is True
    assert config.sandbox.image == "ralph:latest"
    assert config.sandbox.network.policy == "allow-all"
    assert config.sandbox.network.dns == ("8.8.8.8", "1.1.1.1")
    assert all(mount.readonly for mount in config.sandbox.credential_mounts)
    assert config.git.auto_push is True
    assert config.git.protected_branches == ("main", "master", "production")
    assert config.completion.idle_threshold == 2
    assert config.monitoring.max_consecutive_errors == 5
    assert config.monitoring.notifications.on_complete == "none"
    assert config.validation.enabled is False
    assert config.timeout_seconds() == 3600.0


def test_load_config_reads_sections(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_PROVIDER", raising=False)
    _write_config(
        tmp_path,
        {
            "agent": {"provider": "cursor", "cursor": {"model": "gpt-5", "timeout_minutes": 15}},
            "sandbox": {
                "reuse_container": True,
                "network": {"policy": "allowlist", "allowed": ["github.com", "pypi.org"]},
                "resources": {"memory": "4g", "cpus": "2", "timeout_minutes": 90},
                "credential_mounts": [],
            },
            "git": {"auto_push": False, "protected_branches": ["release"]},
            "completion": {"idle_threshold": 4},
            "monitoring": {
                "max_consecutive_errors": 0,
                "notifications": {"on_error": "webhook:https://hooks.example.com/ralph"},
            },
            "validation": {"enabled": True, "command": "make check"},
            "worktree": {"name": "Ralph", "email": "ralph@example.com", "create_pr": True},
        },
    )

    config = _load_config(tmp_path)

    assert config.agent.provider == "cursor"
    assert config.agent.cursor_model == "gpt-5"
    assert config.timeout_seconds() == 900.0
    assert config.sandbox.reuse_container is True
    assert config.sandbox.network.allowed == ("github.com", "pypi.org")
    assert config.sandbox.resources.timeout_minutes == 90
    assert config.sandbox.credential_mounts == ()
    assert config.git.auto_push is False
    assert config.git.protected_branches == ("release",)
    assert config.completion.idle_threshold == 4
    assert config.monitoring.max_consecutive_errors == 0
    assert config.monitoring.notifications.on_error == "webhook:https://hooks.example.com/ralph"
    assert config.validation.command == "make check"
    assert config.worktree.create_pr is True


def test_provider_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config(tmp_path, {"agent": {"provider": "claude"}})
    monkeypatch.setenv("RALPH_PROVIDER", "cursor")

    assert _load_config(tmp_path).agent.provider == "cursor"
    assert _load_config(tmp_path, provider_override="claude").agent.provider == "claude"


def test_unknown_provider_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_PROVIDER", raising=False)
    _write_config(tmp_path, {"agent": {"provider": "gemini"}})

    with pytest.raises(ConfigError, match="agent.provider"):
        _load_config(tmp_path)


def test_unknown_network_policy_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_PROVIDER", raising=False)
    _write_config(tmp_path, {"sandbox": {"network": {"policy": "open"}}})

    with pytest.raises(ConfigError, match="sandbox.network.policy"):
        _load_config(tmp_path)


def test_malformed_yaml_is_config_error(tmp_path: Path) -> None:
    (tmp_path / "ralph.yaml").write_text("agent: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="not valid YAML"):
        _load_config(tmp_path)


def test_non_mapping_section_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_PROVIDER", raising=False)
    _write_config(tmp_path, {"git": ["main"]})

    with pytest.raises(ConfigError, match="'git' must be a mapping"):
        _load_config(tmp_path)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("8g", 8 * 1024**3), ("512m", 512 * 1024**2), ("1.5G", int(1.5 * 1024**3)), ("2048", 2048), ("64kb", 65536)],
)
def test_parse_memory_limit(value: str, expected: int) -> None:
    assert _parse_memory_limit(value) == expected


@pytest.mark.parametrize("value", ["", "lots", "8x", "-1g"])
def test_parse_memory_limit_rejects_garbage(value: str) -> None:
    with pytest.raises(ConfigError):
        _parse_memory_limit(value)


def test_parse_cpus() -> None:
    assert _parse_cpus("4") == 4_000_000_000
    assert _parse_cpus("0.5") == 500_000_000
    with pytest.raises(ConfigError):
        _parse_cpus("0")
    with pytest.raises(ConfigError):
        _parse_cpus("many")
