"""Sandbox error taxonomy.

Only conditions a caller can act on get their own type. Stale lock
extension/release is not an error: those calls return False or no-op.
"""

from __future__ import annotations


class SandboxError(RuntimeError):
    """Base class for sandbox orchestration failures."""


class ProvisionError(SandboxError):
    """Compute unit never became healthy. The thread's volume is preserved."""

    def __init__(self, thread_id: str, message: str):
        super().__init__(message)
        self.thread_id = thread_id


class DuplicateSessionError(SandboxError):
    """A registry row already exists for the thread (lost insert race)."""

    def __init__(self, thread_id: str):
        super().__init__(f"Session already registered for thread {thread_id}")
        self.thread_id = thread_id


class TransientBackendError(SandboxError):
    """Network/API/CLI failure from a sandbox or volume backend."""


class LockUnavailableError(SandboxError):
    """Thread lock could not be acquired within the retry policy."""

    def __init__(self, thread_id: str, attempts: int):
        super().__init__(f"Could not acquire lock for thread {thread_id} after {attempts} attempt(s)")
        self.thread_id = thread_id
        self.attempts = attempts


class LockLostError(SandboxError):
    """The thread lock expired or was taken over while work was in progress."""

    def __init__(self, thread_id: str):
        super().__init__(f"Lost lock for thread {thread_id} before work finished")
        self.thread_id = thread_id
