"""
Docker sandbox backend.

Implements SandboxBackend using local Docker containers.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

from sandbox.allocator import container_name, next_port, port_for_thread
from sandbox.client import SandboxClient
from sandbox.config import DockerConfig
from sandbox.docker_cli import DockerCLI
from sandbox.errors import ProvisionError, SandboxError, TransientBackendError
from sandbox.provider import SandboxBackend, SandboxSession
from sandbox.volumes import MANAGED_BY, DockerVolumeStore

logger = logging.getLogger(__name__)

# "0.0.0.0:8000->4096/tcp" or a published range "0.0.0.0:8000-8010->4096-4106/tcp"
_PUBLISHED_PORT = re.compile(r":(\d+)(?:-(\d+))?->")


class DockerBackend(SandboxBackend):
    """
    Local Docker sandbox backend.

    Notes:
    - One named container and one named volume per thread.
    - A stopped container is restarted, never recreated, so it keeps its port.
    - New containers scan forward from the thread's deterministic port.
    """

    name = "local"

    def __init__(
        self,
        config: DockerConfig | None = None,
        *,
        password: str | None = None,
        health_timeout_sec: float = 30.0,
        health_poll_interval_sec: float = 1.0,
        cli: DockerCLI | None = None,
    ):
        self.config = config or DockerConfig()
        self.password = password
        self.health_timeout_sec = health_timeout_sec
        self.health_poll_interval_sec = health_poll_interval_sec
        self.cli = cli or DockerCLI(command_timeout_sec=self.config.command_timeout_sec)
        self.volumes = DockerVolumeStore(self.cli)

    # ==================== SandboxBackend ====================

    def get_or_create_session(self, thread_id: str, user_id: str) -> SandboxSession:
        logger.info("Getting or creating docker sandbox for thread %s (user=%s)", thread_id, user_id)
        name = container_name(thread_id)
        volume = self.volumes.ensure_volume(thread_id)

        info = self.cli.inspect("container", name)
        if info is not None:
            port = self._bound_port(info) or port_for_thread(thread_id)
            if _is_running(info):
                logger.info("Reusing running container %s on port %d", name, port)
                return self._session(thread_id, name, volume, port)

            logger.info("Starting stopped container %s on port %d", name, port)
            self.cli.run(["start", name])
            if not self._wait_for_health(name):
                # @@@keep-restarted-container - only stop; removing it would lose the assigned port.
                self._stop_quietly(name)
                raise ProvisionError(
                    thread_id,
                    f"Container {name} failed to become healthy after {self.health_timeout_sec}s",
                )
            return self._session(thread_id, name, volume, port)

        port = self.find_available_port(thread_id)
        logger.info("Creating container %s on port %d", name, port)
        try:
            self.cli.run(self._run_args(thread_id, user_id, name, volume, port))
            healthy = self._wait_for_health(name)
        except SandboxError:
            # @@@run-rollback - `docker run` can fail after the container exists (port bind, entrypoint).
            self._discard_container(name)
            raise

        if not healthy:
            self._discard_container(name)
            raise ProvisionError(
                thread_id,
                f"Container {name} failed to become healthy after {self.health_timeout_sec}s",
            )

        logger.info("Docker sandbox ready for thread %s", thread_id)
        return self._session(thread_id, name, volume, port)

    def stop_sandbox(self, session_id: str) -> None:
        logger.info("Stopping docker sandbox %s", session_id)
        try:
            info = self.cli.inspect("container", session_id)
            if info is None:
                logger.warning("Container %s not found, nothing to stop", session_id)
                return
            if _is_running(info):
                self.cli.run(
                    ["stop", "-t", str(self.config.stop_grace_sec), session_id],
                    timeout=self.config.command_timeout_sec + self.config.stop_grace_sec,
                )
                logger.info("Container %s stopped", session_id)
        except SandboxError as e:
            logger.warning("Failed to stop container %s: %s", session_id, e)

    def is_sandbox_active(self, session_id: str) -> bool:
        info = self.cli.inspect("container", session_id)
        return info is not None and _is_running(info)

    def create_client_for_session(self, session_id: str, endpoint: str | None = None) -> SandboxClient:
        if endpoint is None:
            # Ports found by scanning are only known from the container itself.
            endpoint = self._endpoint(self._published_port_of(session_id))
        return SandboxClient(endpoint, password=self.password)

    # ==================== Ports ====================

    def published_ports(self) -> set[int]:
        result = self.cli.run(["ps", "--format", "{{.Ports}}"])
        ports: set[int] = set()
        for line in result.stdout.splitlines():
            for start, end in _PUBLISHED_PORT.findall(line):
                ports.update(range(int(start), int(end or start) + 1))
        return ports

    def find_available_port(self, thread_id: str) -> int:
        taken = self.published_ports()
        port = port_for_thread(thread_id)
        for _ in range(self.config.max_port_attempts):
            if port not in taken:
                return port
            logger.debug("Port %d already published, probing next", port)
            port = next_port(port)
        raise TransientBackendError(
            f"Could not find available port for thread {thread_id} after {self.config.max_port_attempts} attempts"
        )

    # ==================== Internals ====================

    def _run_args(self, thread_id: str, user_id: str, name: str, volume: str, port: int) -> list[str]:
        cp = self.config.container_port
        args = [
            "run",
            "-d",
            "--name",
            name,
            "-p",
            f"{port}:{cp}",
            "-v",
            f"{volume}:{self.config.mount_path}",
            "--restart",
            "unless-stopped",
            "-e",
            f"HOME={self.config.home}",
            "--label",
            f"managed-by={MANAGED_BY}",
            "--label",
            f"thread-id={thread_id}",
            "--label",
            f"user-id={user_id}",
        ]
        if self.password:
            args.extend(["-e", f"OPENCODE_SERVER_PASSWORD={self.password}"])
        args.append(self.config.image)
        return args

    def _wait_for_health(self, name: str) -> bool:
        deadline = time.monotonic() + self.health_timeout_sec
        while True:
            time.sleep(self.health_poll_interval_sec)
            try:
                info = self.cli.inspect("container", name)
            except TransientBackendError as e:
                logger.debug("Health check for %s failed: %s", name, e)
                info = None
            if info is not None and _is_healthy(info):
                return True
            if time.monotonic() >= deadline:
                return False

    def _discard_container(self, name: str) -> None:
        """Roll back a container this call created. Errors are logged, never raised."""
        try:
            self._stop_quietly(name)
            self.cli.run(["rm", "-f", name], check=False)
        except SandboxError as e:
            logger.warning("Rollback of container %s failed: %s", name, e)

    def _published_port_of(self, name: str) -> int:
        info = self.cli.inspect("container", name)
        port = self._bound_port(info) if info is not None else None
        if port is None:
            raise SandboxError(f"Container {name} has no published port")
        return port

    def _stop_quietly(self, name: str) -> None:
        result = self.cli.run(["stop", name], check=False)
        if result.returncode != 0:
            logger.warning("Rollback stop of %s failed: %s", name, result.stderr.strip())

    def _bound_port(self, info: dict[str, Any]) -> int | None:
        bindings = (info.get("HostConfig") or {}).get("PortBindings") or {}
        entries = bindings.get(f"{self.config.container_port}/tcp") or []
        for entry in entries:
            host_port = (entry or {}).get("HostPort")
            if host_port:
                return int(host_port)
        return None

    def _endpoint(self, port: int) -> str:
        return f"http://{self.config.host}:{port}"

    def _session(self, thread_id: str, name: str, volume: str, port: int) -> SandboxSession:
        endpoint = self._endpoint(port)
        return SandboxSession(
            thread_id=thread_id,
            session_id=name,
            volume_id=volume,
            endpoint=endpoint,
            client=self.create_client_for_session(name, endpoint),
        )


def _is_running(info: dict[str, Any]) -> bool:
    return bool((info.get("State") or {}).get("Running"))


def _is_healthy(info: dict[str, Any]) -> bool:
    state = info.get("State") or {}
    if not state.get("Running"):
        return False
    health = state.get("Health")
    # No healthcheck defined in the image: running is as good as it gets.
    return health is None or health.get("Status") == "healthy"
