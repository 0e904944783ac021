"""Sandbox backend implementations."""

from sandbox.providers.agentcore import AgentCoreBackend
from sandbox.providers.docker import DockerBackend

__all__ = ["AgentCoreBackend", "DockerBackend"]
