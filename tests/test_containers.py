from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest
from docker.errors import ImageNotFound, NotFound

from ralphloop.containers import ContainerManager, _build_image
from ralphloop.models import (
    AgentError,
    ContainerFailedError,
    ContainerUnhealthyError,
    ImageNotFoundError,
    LoopConfig,
    MonitoringConfig,
    NetworkConfig,
    SandboxConfig,
    SandboxTimeoutError,
)
from ralphloop.runners import ERROR_KIND_RATE_LIMIT, _classify_agent_error


class _ExecResult:
    def __init__(self, exit_code: int, output: bytes = b"") -> None:
        self.exit_code = exit_code
        self.output = output


class _FakeContainer:
    def __init__(
        self,
        name: str,
        status: str = "running",
        *,
        after_action: str | None = "running",
    ) -> None:
        self.name = name
        self.id = f"id-{name}"
        self.status = status
        self._pending: str | None = None
        self._after_action = after_action
        self.actions: list[str] = []
        self.exec_calls: list[dict[str, Any]] = []
        self.removed = False
        self.killed = threading.Event()

    def reload(self) -> None:
        if self.removed:
            raise NotFound("gone")
        if self._pending is not None:
            self.status = self._pending
            self._pending = None

    def restart(self, timeout: int = 10) -> None:
        self.actions.append("restart")
        self._pending = self._after_action

    def unpause(self) -> None:
        self.actions.append("unpause")
        self._pending = self._after_action

    def kill(self) -> None:
        self.actions.append("kill")
        self.killed.set()

    def remove(self, force: bool = False) -> None:
        self.actions.append("remove")
        self.removed = True

    def exec_run(self, cmd: list[str], **kwargs: Any) -> _ExecResult:
        self.exec_calls.append({"cmd": cmd, **kwargs})
        return _ExecResult(0)


class _FakeContainers:
    def __init__(self, client: _FakeClient) -> None:
        self.client = client
        self.by_name: dict[str, _FakeContainer] = {}
        self.run_calls: list[dict[str, Any]] = []
        self.listed: list[_FakeContainer] = []

    def run(self, image: str, command: list[str], **kwargs: Any) -> _FakeContainer:
        self.run_calls.append({"image": image, "command": command, **kwargs})
        container = _FakeContainer(kwargs["name"])
        self.by_name[container.name] = container
        self.client.by_id[container.id] = container
        return container

    def get(self, name: str) -> _FakeContainer:
        container = self.by_name.get(name)
        if container is None or container.removed:
            raise NotFound(f"no such container: {name}")
        return container

    def list(self, **kwargs: Any) -> list[_FakeContainer]:
        self.list_kwargs = kwargs
        return list(self.listed)


class _FakeImages:
    def __init__(self, available: bool) -> None:
        self.available = available

    def get(self, image: str) -> object:
        if not self.available:
            raise ImageNotFound(f"No such image: {image}")
        return object()


class _FakeAPI:
    def __init__(self, client: _FakeClient) -> None:
        self.client = client
        self.chunks: list[tuple[bytes | None, bytes | None]] = [(b"hello ", None), (None, b"world")]
        self.exit_code = 0
        self.block = False
        self.created: list[tuple[str, list[str]]] = []

    def exec_create(self, container_id: str, cmd: list[str], workdir: str = "") -> str:
        self.created.append((container_id, cmd))
        return f"exec-{len(self.created)}"

    def exec_start(self, exec_id: str, stream: bool = False, demux: bool = False):
        if self.block:
            container_id = self.created[-1][0]
            self.client.by_id[container_id].killed.wait(timeout=5)
            return iter([])
        return iter(self.chunks)

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return {"ExitCode": self.exit_code}


class _FakeClient:
    def __init__(self, *, image_available: bool = True) -> None:
        self.by_id: dict[str, _FakeContainer] = {}
        self.containers = _FakeContainers(self)
        self.images = _FakeImages(image_available)
        self.api = _FakeAPI(self)


def _config(*, policy: str = "allow-all", allowed: tuple[str, ...] = (), reuse: bool = False) -> LoopConfig:
    return LoopConfig(
        sandbox=SandboxConfig(
            reuse_container=reuse,
            network=NetworkConfig(policy=policy, allowed=allowed),
        ),
        monitoring=MonitoringConfig(show_progress=False),
    )


def _manager(
    tmp_path: Path,
    client: _FakeClient,
    config: LoopConfig | None = None,
    **kwargs: Any,
) -> ContainerManager:
    return ContainerManager(
        tmp_path,
        config or _config(),
        ["claude", "-p", "--output-format", "text"],
        client=client,
        sleep=lambda _seconds: None,
        **kwargs,
    )


def test_exited_container_is_restarted(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-exited", "exited")

    assert manager.ensure_healthy(container) is True
    assert container.actions == ["restart"]
    assert container.status == "running"


def test_created_container_is_restarted(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-created", "created")

    manager.ensure_healthy(container)

    assert container.status == "running"


def test_running_container_needs_no_action(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-ok", "running")

    assert manager.ensure_healthy(container) is False
    assert container.actions == []


def test_paused_container_is_unpaused(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-paused", "paused")

    manager.ensure_healthy(container)

    assert container.actions == ["unpause"]
    assert container.status == "running"


def test_restarting_container_waits_once(tmp_path: Path) -> None:
    container = _FakeContainer("ralph-restarting", "restarting")
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        container._pending = "running"

    manager = ContainerManager(tmp_path, _config(), ["agent"], client=_FakeClient(), sleep=_sleep)

    manager.ensure_healthy(container)

    assert sleeps == [2.0]
    assert container.status == "running"


def test_restarting_container_that_stays_restarting_fails(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-loop", "restarting")

    with pytest.raises(ContainerUnhealthyError, match="did not recover"):
        manager.ensure_healthy(container)


@pytest.mark.parametrize("status", ["dead", "removing", ""])
def test_unrecoverable_states_fail(tmp_path: Path, status: str) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-dead", status)

    with pytest.raises(ContainerUnhealthyError, match="unrecoverable"):
        manager.ensure_healthy(container)
    assert container.actions == []


def test_failed_restart_is_unhealthy(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient())
    container = _FakeContainer("ralph-stuck", "exited", after_action="exited")

    with pytest.raises(ContainerUnhealthyError):
        manager.ensure_healthy(container)


def test_ephemeral_run_streams_output_and_removes_container(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(tmp_path, client)

    output = manager.run(tmp_path, "Do the task")

    assert output == "hello world"
    [call] = client.containers.run_calls
    assert call["image"] == "ralph:latest"
    assert call["mem_limit"] == 8 * 1024**3
    assert call["nano_cpus"] == 4_000_000_000
    assert call["dns"] == ["8.8.8.8", "1.1.1.1"]
    assert call["labels"]["ralphloop.managed"] == "true"
    assert call["volumes"][str(tmp_path.resolve())] == {"bind": "/workspace", "mode": "rw"}
    container = client.containers.by_name[call["name"]]
    assert container.removed is True
    _container_id, exec_cmd = client.api.created[0]
    assert exec_cmd[:2] == ["sh", "-c"]
    assert exec_cmd[2].endswith("< /workspace/.ralph/prompt.tmp")
    assert not (tmp_path / ".ralph" / "prompt.tmp").exists()


def test_nonzero_exit_raises_agent_error_with_output(tmp_path: Path) -> None:
    client = _FakeClient()
    client.api.chunks = [(None, b"Error: rate limit exceeded")]
    client.api.exit_code = 1
    manager = _manager(tmp_path, client)

    with pytest.raises(AgentError) as excinfo:
        manager.run(tmp_path, "Do the task")

    assert _classify_agent_error(excinfo.value) == ERROR_KIND_RATE_LIMIT
    assert all(container.removed for container in client.containers.by_name.values())


def test_timeout_kills_container(tmp_path: Path) -> None:
    client = _FakeClient()
    client.api.block = True
    manager = _manager(tmp_path, client, timeout_seconds=0.05)

    with pytest.raises(SandboxTimeoutError):
        manager.run(tmp_path, "Do the task")

    [container] = client.containers.by_name.values()
    assert "kill" in container.actions
    assert container.removed is True


def test_deny_policy_disables_networking(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(tmp_path, client, _config(policy="deny"))

    manager.run(tmp_path, "prompt")

    [call] = client.containers.run_calls
    assert call["network_mode"] == "none"
    assert "dns" not in call


def test_allowlist_policy_installs_firewall(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(
        tmp_path,
        client,
        _config(policy="allowlist", allowed=("github.com", "$(whoami).evil.com")),
    )

    manager.run(tmp_path, "prompt")

    [call] = client.containers.run_calls
    assert call["cap_add"] == ["NET_ADMIN"]
    container = client.containers.by_name[call["name"]]
    [firewall] = container.exec_calls
    assert firewall["user"] == "root"
    script = firewall["cmd"][2]
    assert "github.com" in script
    assert "$(whoami)" not in script


def test_missing_image_raises(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeClient(image_available=False))

    with pytest.raises(ImageNotFoundError, match="ralph:latest"):
        manager.run(tmp_path, "prompt")


def test_persistent_container_is_reused_until_close(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(tmp_path, client, _config(reuse=True))

    manager.prepare(tmp_path)
    name = manager.persistent_id
    assert name is not None
    manager.execute(tmp_path, "one")
    manager.execute(tmp_path, "two")

    assert len(client.containers.run_calls) == 1
    assert client.containers.by_name[name].removed is False

    manager.close()

    assert client.containers.by_name[name].removed is True
    assert manager.persistent_id is None


def test_dead_persistent_container_falls_back_to_ephemeral(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(tmp_path, client, _config(reuse=True))
    name = manager.create_persistent(tmp_path)
    client.containers.by_name[name].status = "dead"

    assert manager.run(tmp_path, "prompt", name) == "hello world"

    assert len(client.containers.run_calls) == 2
    ephemeral_name = client.containers.run_calls[1]["name"]
    assert client.containers.by_name[ephemeral_name].removed is True
    assert client.containers.by_name[name].removed is True
    assert manager.persistent_id is None


def test_persistent_container_is_replaced_after_timeout(tmp_path: Path) -> None:
    client = _FakeClient()
    client.api.block = True
    manager = _manager(tmp_path, client, _config(reuse=True), timeout_seconds=0.05)
    manager.prepare(tmp_path)
    first = manager.persistent_id
    assert first is not None

    with pytest.raises(SandboxTimeoutError):
        manager.execute(tmp_path, "one")

    assert manager.persistent_id is None
    assert client.containers.by_name[first].removed is True

    client.api.block = False
    assert manager.execute(tmp_path, "two") == "hello world"

    second = manager.persistent_id
    assert second is not None and second != first
    assert len(client.containers.run_calls) == 2
    assert client.containers.by_name[second].removed is False
    assert manager.execute(tmp_path, "three") == "hello world"
    assert len(client.containers.run_calls) == 2


def test_container_logs_go_to_configured_file(tmp_path: Path) -> None:
    client = _FakeClient()
    config = LoopConfig(
        sandbox=SandboxConfig(network=NetworkConfig(policy="allowlist", allowed=("github.com", "bad domain"))),
        monitoring=MonitoringConfig(log_file="logs/sandbox.log", show_progress=False),
    )
    manager = _manager(tmp_path, client, config)

    manager.run(tmp_path, "prompt")

    log_text = (tmp_path / "logs" / "sandbox.log").read_text(encoding="utf-8")
    assert "sandbox container created" in log_text
    assert "sandbox network warning" in log_text
    assert not (tmp_path / ".ralph" / "logs" / "loop.log").exists()

def test_cleanup_orphaned_skips_persistent(tmp_path: Path) -> None:
    client = _FakeClient()
    manager = _manager(tmp_path, client)
    manager.persistent_id = "ralph-keep"
    keep = _FakeContainer("ralph-keep")
    stale = [_FakeContainer("ralph-old1", "exited"), _FakeContainer("ralph-old2")]
    client.containers.listed = [keep, *stale]

    assert manager.cleanup_orphaned() == 2

    assert keep.removed is False
    assert all(container.removed for container in stale)
    labels = client.containers.list_kwargs["filters"]["label"]
    assert "ralphloop.managed=true" in labels
    assert f"ralphloop.workdir={tmp_path.resolve()}" in labels


class _BuildImages:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def build(self, **kwargs: Any) -> tuple[Any, list[dict[str, str]]]:
        self.calls.append(kwargs)

        class _Image:
            id = "sha256:feed"

        return (_Image(), [{"stream": "Step 1/2 : FROM debian\n"}, {"aux": "ignored"}])


def test_build_image_streams_log(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "Dockerfile").write_text("FROM debian\n", encoding="utf-8")
    client = _FakeClient()
    client.images = _BuildImages()

    assert _build_image(tmp_path, dockerfile="Dockerfile", tag="ralph:latest", client=client) == "sha256:feed"

    assert client.images.calls[0]["tag"] == "ralph:latest"
    assert "Step 1/2 : FROM debian" in capsys.readouterr().out


def test_build_image_requires_dockerfile(tmp_path: Path) -> None:
    with pytest.raises(ContainerFailedError, match="Dockerfile not found"):
        _build_image(tmp_path, dockerfile="Dockerfile", tag="ralph:latest", client=_FakeClient())
