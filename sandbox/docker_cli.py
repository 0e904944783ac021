"""Thin wrapper over the docker CLI.

Requires Docker CLI available on host. Every call is bounded by a timeout.
"""

from __future__ import annotations

import json
import subprocess
from typing import Any

from sandbox.errors import TransientBackendError

_NOT_FOUND_MARKERS = ("no such object", "no such container", "no such volume", "not found")


def is_not_found(result: subprocess.CompletedProcess[str]) -> bool:
    return result.returncode != 0 and any(marker in result.stderr.lower() for marker in _NOT_FOUND_MARKERS)


class DockerCLI:
    def __init__(self, command_timeout_sec: float = 30.0, binary: str = "docker"):
        self.command_timeout_sec = command_timeout_sec
        self.binary = binary

    def run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        effective_timeout = timeout if timeout is not None else self.command_timeout_sec
        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientBackendError(f"Docker command timed out after {effective_timeout}s: {' '.join(cmd)}") from exc
        except OSError as exc:
            raise TransientBackendError(f"Docker CLI unavailable: {exc}") from exc
        if check and result.returncode != 0:
            raise TransientBackendError(result.stderr.strip() or f"Docker command failed: {' '.join(cmd)}")
        return result

    def inspect(self, kind: str, name: str) -> dict[str, Any] | None:
        """`docker <kind> inspect` as a dict; None when the object does not exist."""
        result = self.run([kind, "inspect", name], check=False)
        if result.returncode != 0:
            if is_not_found(result):
                return None
            raise TransientBackendError(result.stderr.strip() or f"docker {kind} inspect {name} failed")
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise TransientBackendError(f"Unparseable docker {kind} inspect output for {name}") from exc
        if isinstance(payload, list):
            return payload[0] if payload else None
        return payload
