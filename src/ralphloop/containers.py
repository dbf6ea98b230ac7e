"""Ralphloop container lifecycle — sandbox creation, health recovery, and agent exec."""

from __future__ import annotations

import shlex
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ralphloop.config import _parse_cpus, _parse_memory_limit
from ralphloop.constants import (
    CONTAINER_LABEL,
    CONTAINER_NAME_PREFIX,
    CONTAINER_RESTART_WAIT_SECONDS,
    CONTAINER_STOP_TIMEOUT_SECONDS,
    CONTAINER_WORKDIR,
    DEFAULT_LOG_FILE,
    DOCKER_CLIENT_TIMEOUT_SECONDS,
    HEALTHY_STATUSES,
    PROMPT_TEMP_RELATIVE,
    RESTARTABLE_STATUSES,
)
from ralphloop.models import (
    AgentError,
    ContainerFailedError,
    ContainerUnhealthyError,
    DockerUnavailableError,
    ImageNotFoundError,
    LoopConfig,
    NetworkSetupError,
    SandboxTimeoutError,
)
from ralphloop.network import _build_firewall_script
from ralphloop.utils import _append_log, _compact_log_text

_WORKDIR_LABEL = "ralphloop.workdir"


def _generate_container_name() -> str:
    return f"{CONTAINER_NAME_PREFIX}{uuid.uuid4().hex[:8]}"


def _decode_chunk(chunk: Any) -> str:
    if chunk is None:
        return ""
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    return str(chunk)


class ContainerManager:
    """Runs the agent inside Docker containers bound to one working copy.

    A manager owns at most one persistent container (``reuse_container``); every
    other invocation gets an ephemeral container that is removed after the run.
    """

    def __init__(
        self,
        repo_root: Path,
        config: LoopConfig,
        agent_argv: list[str],
        *,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout_seconds: float | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.agent_argv = list(agent_argv)
        self.persistent_id: str | None = None
        self._client = client
        self._sleep = sleep
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.timeout_seconds()

    def _log(self, message: str) -> None:
        _append_log(self.repo_root, message, log_file=self.config.monitoring.log_file)

    # ------------------------------------------------------------------
    # Docker client
    # ------------------------------------------------------------------

    def client(self) -> Any:
        if self._client is None:
            try:
                client = docker.from_env(timeout=DOCKER_CLIENT_TIMEOUT_SECONDS)
                client.ping()
            except DockerException as exc:
                raise DockerUnavailableError(f"Docker is not available: {exc}") from exc
            self._client = client
        return self._client

    def _ensure_image(self) -> None:
        image = self.config.sandbox.image
        try:
            self.client().images.get(image)
        except ImageNotFound as exc:
            raise ImageNotFoundError(
                f"Sandbox image '{image}' not found; build it before running the loop"
            ) from exc
        except APIError as exc:
            raise DockerUnavailableError(f"failed to inspect image '{image}': {exc}") from exc

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _volumes(self, working_dir: Path) -> dict[str, dict[str, str]]:
        volumes: dict[str, dict[str, str]] = {
            str(working_dir.resolve()): {"bind": CONTAINER_WORKDIR, "mode": "rw"},
        }
        sandbox = self.config.sandbox
        for mount in sandbox.mounts:
            source = Path(mount.source).expanduser()
            if not source.is_absolute():
                source = (self.repo_root / source).resolve()
            volumes[str(source)] = {"bind": mount.target, "mode": "ro" if mount.readonly else "rw"}
        for mount in sandbox.credential_mounts:
            source = Path(mount.source).expanduser()
            if not source.exists():
                continue
            volumes[str(source)] = {"bind": mount.target, "mode": "ro" if mount.readonly else "rw"}
        return volumes

    def _container_kwargs(self, working_dir: Path, name: str) -> dict[str, Any]:
        sandbox = self.config.sandbox
        kwargs: dict[str, Any] = {
            "name": name,
            "detach": True,
            "working_dir": CONTAINER_WORKDIR,
            "volumes": self._volumes(working_dir),
            "labels": {
                CONTAINER_LABEL: "true",
                _WORKDIR_LABEL: str(self.repo_root.resolve()),
            },
            "mem_limit": _parse_memory_limit(sandbox.resources.memory),
            "nano_cpus": _parse_cpus(sandbox.resources.cpus),
            "dns": list(sandbox.network.dns),
        }
        policy = sandbox.network.policy
        if policy == "deny":
            kwargs["network_mode"] = "none"
            kwargs.pop("dns")
        elif policy == "allowlist":
            kwargs["cap_add"] = ["NET_ADMIN"]
        return kwargs

    def _create_container(self, working_dir: Path) -> Any:
        self._ensure_image()
        name = _generate_container_name()
        try:
            container = self.client().containers.run(
                self.config.sandbox.image,
                ["sleep", "infinity"],
                **self._container_kwargs(working_dir, name),
            )
        except ImageNotFound as exc:
            raise ImageNotFoundError(str(exc)) from exc
        except DockerException as exc:
            raise ContainerFailedError(f"failed to create container {name}: {exc}") from exc
        self._log(f"sandbox container created name={name}")
        try:
            self._apply_network_policy(container)
        except Exception:
            self._remove_container(container)
            raise
        return container

    def _apply_network_policy(self, container: Any) -> None:
        network = self.config.sandbox.network
        if network.policy != "allowlist":
            return
        script = _build_firewall_script(
            network.allowed,
            repo_root=self.repo_root,
            log_file=self.config.monitoring.log_file,
        )
        try:
            result = container.exec_run(["sh", "-c", script], user="root")
        except DockerException as exc:
            raise NetworkSetupError(f"firewall setup failed: {exc}") from exc
        if result.exit_code != 0:
            output = _decode_chunk(result.output)
            raise NetworkSetupError(
                f"firewall setup exited with code {result.exit_code}: "
                f"{_compact_log_text(output, limit=400)}"
            )

    def _remove_container(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except DockerException as exc:
            self._log(f"sandbox container remove failed name={container.name}: {exc}")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ensure_healthy(self, container: Any) -> bool:
        """Bring ``container`` to the running state or raise ContainerUnhealthyError.

        Returns True when a recovery action was needed.
        """
        try:
            container.reload()
        except NotFound as exc:
            raise ContainerUnhealthyError(f"container {container.name} no longer exists") from exc
        status = str(container.status or "").strip().lower()
        if status in HEALTHY_STATUSES:
            return False

        try:
            if status in RESTARTABLE_STATUSES:
                container.restart(timeout=CONTAINER_STOP_TIMEOUT_SECONDS)
            elif status == "paused":
                container.unpause()
            elif status == "restarting":
                self._sleep(CONTAINER_RESTART_WAIT_SECONDS)
            else:
                raise ContainerUnhealthyError(
                    f"container {container.name} is in unrecoverable state '{status or 'unknown'}'"
                )
            container.reload()
        except DockerException as exc:
            raise ContainerUnhealthyError(
                f"container {container.name} could not recover from '{status}': {exc}"
            ) from exc

        recovered = str(container.status or "").strip().lower()
        if recovered not in HEALTHY_STATUSES:
            raise ContainerUnhealthyError(
                f"container {container.name} did not recover from '{status}' (now '{recovered}')"
            )
        self._log(f"sandbox container recovered name={container.name} from={status}")
        return True

    # ------------------------------------------------------------------
    # Lifecycle surface
    # ------------------------------------------------------------------

    def cleanup_orphaned(self) -> int:
        try:
            containers = self.client().containers.list(
                all=True,
                filters={
                    "label": [
                        f"{CONTAINER_LABEL}=true",
                        f"{_WORKDIR_LABEL}={self.repo_root.resolve()}",
                    ]
                },
            )
        except DockerException as exc:
            self._log(f"sandbox orphan listing failed: {exc}")
            return 0
        removed = 0
        for container in containers:
            if self.persistent_id is not None and container.name == self.persistent_id:
                continue
            self._remove_container(container)
            removed += 1
        if removed:
            self._log(f"sandbox removed orphaned containers count={removed}")
        return removed

    def create_persistent(self, working_dir: Path) -> str:
        container = self._create_container(working_dir)
        self.persistent_id = container.name
        return container.name

    def remove_persistent(self, container_id: str) -> None:
        try:
            container = self.client().containers.get(container_id)
        except NotFound:
            container = None
        except DockerException as exc:
            self._log(f"sandbox persistent lookup failed name={container_id}: {exc}")
            container = None
        if container is not None:
            self._remove_container(container)
            self._log(f"sandbox persistent container removed name={container_id}")
        if self.persistent_id == container_id:
            self.persistent_id = None

    def prepare(self, working_dir: Path) -> None:
        self.cleanup_orphaned()
        if self.config.sandbox.reuse_container and self.persistent_id is None:
            self.create_persistent(working_dir)

    def close(self) -> None:
        if self.persistent_id is not None:
            self.remove_persistent(self.persistent_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _acquire_container(self, working_dir: Path, reuse_id: str | None) -> tuple[Any, bool]:
        if reuse_id is not None:
            container = None
            try:
                container = self.client().containers.get(reuse_id)
                if self.ensure_healthy(container):
                    self._apply_network_policy(container)
                return (container, False)
            except (NotFound, ContainerUnhealthyError) as exc:
                self._log(f"sandbox persistent container unusable name={reuse_id}: {exc}; using ephemeral container")
                print(
                    f"ralph sandbox: WARNING persistent container {reuse_id} unusable; using a fresh container",
                    file=sys.stderr,
                )
                if reuse_id == self.persistent_id:
                    if container is not None:
                        self._remove_container(container)
                    self.persistent_id = None
        return (self._create_container(working_dir), True)

    def _exec_command(self) -> list[str]:
        prompt_path = f"{CONTAINER_WORKDIR}/{PROMPT_TEMP_RELATIVE}"
        return ["sh", "-c", f"{shlex.join(self.agent_argv)} < {shlex.quote(prompt_path)}"]

    def _exec_streaming(self, container: Any, result: dict[str, Any]) -> None:
        api = self.client().api
        try:
            exec_id = api.exec_create(container.id, self._exec_command(), workdir=CONTAINER_WORKDIR)
            chunks: list[str] = []
            for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
                for chunk, sink in ((stdout_chunk, sys.stdout), (stderr_chunk, sys.stderr)):
                    text = _decode_chunk(chunk)
                    if not text:
                        continue
                    chunks.append(text)
                    if self.config.monitoring.show_progress:
                        sink.write(text)
                        sink.flush()
            result["output"] = "".join(chunks)
            result["exit_code"] = api.exec_inspect(exec_id).get("ExitCode")
        except Exception as exc:
            result["error"] = exc

    def run(self, working_dir: Path, prompt: str, reuse_id: str | None = None) -> str:
        timeout = self.timeout_seconds
        prompt_path = working_dir / PROMPT_TEMP_RELATIVE
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(prompt, encoding="utf-8")

        container = None
        ephemeral = False
        try:
            container, ephemeral = self._acquire_container(working_dir, reuse_id)
            result: dict[str, Any] = {}
            worker = threading.Thread(
                target=self._exec_streaming,
                args=(container, result),
                daemon=True,
            )
            worker.start()
            worker.join(timeout)
            if worker.is_alive():
                self._log(f"sandbox exec timeout name={container.name} timeout_seconds={int(timeout)}")
                try:
                    container.kill()
                except DockerException as exc:
                    self._log(f"sandbox kill failed name={container.name}: {exc}")
                if not ephemeral and self.persistent_id == container.name:
                    self.persistent_id = None
                    self._remove_container(container)
                raise SandboxTimeoutError(timeout)

            error = result.get("error")
            if error is not None:
                raise ContainerFailedError(f"container exec failed: {error}") from error
            output = str(result.get("output", ""))
            exit_code = result.get("exit_code")
            if exit_code not in (0, None):
                raise AgentError(
                    f"Agent exited with code {exit_code}: {_compact_log_text(output, limit=2000)}"
                )
            return output
        finally:
            if container is not None and ephemeral:
                self._remove_container(container)
            try:
                prompt_path.unlink()
            except FileNotFoundError:
                pass

    def execute(self, working_dir: Path, prompt: str) -> str:
        if self.config.sandbox.reuse_container and self.persistent_id is None:
            self._log("sandbox persistent container missing; creating a replacement")
            self.create_persistent(working_dir)
        return self.run(working_dir, prompt, self.persistent_id)


def _build_image(
    repo_root: Path,
    *,
    dockerfile: str,
    tag: str,
    client: Any = None,
    log_file: str = DEFAULT_LOG_FILE,
) -> str:
    """Build the sandbox image from ``dockerfile``; return the image id."""
    dockerfile_path = repo_root / dockerfile
    if not dockerfile_path.is_file():
        raise ContainerFailedError(f"Dockerfile not found: {dockerfile_path}")
    if client is None:
        try:
            client = docker.from_env(timeout=DOCKER_CLIENT_TIMEOUT_SECONDS)
            client.ping()
        except DockerException as exc:
            raise DockerUnavailableError(f"Docker is not available: {exc}") from exc
    try:
        image, build_logs = client.images.build(
            path=str(repo_root),
            dockerfile=dockerfile,
            tag=tag,
            rm=True,
        )
    except DockerException as exc:
        raise ContainerFailedError(f"image build failed: {exc}") from exc
    for entry in build_logs:
        line = str(entry.get("stream", "")).rstrip() if isinstance(entry, dict) else ""
        if line:
            print(line)
    _append_log(repo_root, f"sandbox image built tag={tag} id={image.id}", log_file=log_file)
    return str(image.id)
