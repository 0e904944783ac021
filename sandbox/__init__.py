"""Sandbox: thread-scoped compute sandboxes and their lifecycle.

Usage:
    from sandbox import bootstrap

    manager = bootstrap()  # loads ThreadboxConfig, applies log_level, wires the manager

    handle = manager.get_or_create_session(thread_id, user_id)
    handle.client.prompt("ls")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sandbox.config import ThreadboxConfig, configure_logging
from sandbox.provider import SandboxBackend, SandboxSession

if TYPE_CHECKING:
    from sandbox.manager import SandboxManager


def create_backend(config: ThreadboxConfig) -> SandboxBackend:
    """Factory: pick the backend once from config."""
    backend = config.backend

    if backend == "local":
        from sandbox.providers.docker import DockerBackend

        return DockerBackend(
            config.docker,
            password=config.opencode_password,
            health_timeout_sec=config.health_timeout_sec,
            health_poll_interval_sec=config.health_poll_interval_sec,
        )

    if backend == "remote":
        from sandbox.providers.agentcore import AgentCoreBackend

        return AgentCoreBackend(
            config.agentcore,
            password=config.opencode_password,
            health_timeout_sec=config.health_timeout_sec,
            health_poll_interval_sec=config.health_poll_interval_sec,
        )

    raise ValueError(f"Unknown sandbox backend: {backend}")


def create_manager(config: ThreadboxConfig, backend: SandboxBackend | None = None) -> SandboxManager:
    """Factory: backend + registry + state adapter, all on config.db_path."""
    # storage imports sandbox.errors; keep the manager import out of package init.
    from sandbox.manager import SandboxManager

    return SandboxManager(
        backend=backend or create_backend(config),
        db_path=config.db_path,
        lock_policy=config.lock.policy(),
        idle_timeout_sec=config.idle_timeout_sec,
    )


def bootstrap(config: ThreadboxConfig | None = None) -> SandboxManager:
    """Load config, apply its log level and build the manager."""
    config = config or ThreadboxConfig.load()
    configure_logging(config.log_level)
    return create_manager(config)


__all__ = [
    "SandboxBackend",
    "SandboxSession",
    "ThreadboxConfig",
    "bootstrap",
    "configure_logging",
    "create_backend",
    "create_manager",
]
