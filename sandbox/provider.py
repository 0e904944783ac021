"""
Abstract sandbox backend interface.

Both backends (remote managed AgentCore, local Docker) implement this
interface. The backend is chosen once at startup; call sites never branch on
backend identity.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from sandbox.client import SandboxClient


@dataclass
class SandboxSession:
    """Handle to a running sandbox for one thread.

    session_id is opaque to callers: a managed-session id or a container name
    depending on the backend.
    """
    thread_id: str
    session_id: str
    volume_id: str
    endpoint: str
    client: SandboxClient


class SandboxBackend(ABC):
    """
    Abstract interface for sandbox backends.

    Implementations:
    - AgentCoreBackend: Bedrock AgentCore code-interpreter sessions + EBS volumes
    - DockerBackend: local Docker containers + named volumes
    """

    name: str  # Backend identifier: 'remote', 'local'

    @abstractmethod
    def get_or_create_session(self, thread_id: str, user_id: str) -> SandboxSession:
        """Reuse the thread's live sandbox or provision one bound to its volume.

        Raises ProvisionError if the sandbox never becomes healthy; the partial
        compute unit is torn down, the volume is kept.
        """

    @abstractmethod
    def stop_sandbox(self, session_id: str) -> None:
        """Gracefully stop a sandbox. Never deletes the volume; never raises."""

    @abstractmethod
    def is_sandbox_active(self, session_id: str) -> bool:
        """Liveness check. A sandbox that no longer exists is inactive."""

    @abstractmethod
    def create_client_for_session(self, session_id: str, endpoint: str | None = None) -> SandboxClient:
        """Build an RPC client for a session. No I/O when endpoint is given."""
