"""
AWS Bedrock AgentCore sandbox backend.

Implements SandboxBackend on top of AgentCore code-interpreter sessions, with
per-thread EBS volumes for durable workspace storage.

Key differences from Docker:
- Compute identity is the AgentCore session id; sessions are named per thread
  so a live one can be rediscovered after a process restart.
- Volumes are found by tags (ThreadId, ManagedBy), not by name.
- The RPC endpoint is fixed by configuration rather than allocated per thread.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sandbox.allocator import short_digest, thread_slug
from sandbox.client import SandboxClient
from sandbox.config import AgentCoreConfig
from sandbox.errors import ProvisionError, SandboxError, TransientBackendError
from sandbox.provider import SandboxBackend, SandboxSession
from sandbox.volumes import EBSVolumeStore

logger = logging.getLogger(__name__)

READY_STATUS = "READY"
DEAD_STATUSES = frozenset({"TERMINATED", "STOPPED", "FAILED"})
NOT_FOUND_CODES = frozenset({"ResourceNotFoundException", "NotFoundException"})
SESSION_NAME_MAX = 48


def _error_code(exc: ClientError) -> str:
    return str((exc.response or {}).get("Error", {}).get("Code", ""))


class AgentCoreBackend(SandboxBackend):
    """Remote managed sandbox backend."""

    name = "remote"

    def __init__(
        self,
        config: AgentCoreConfig | None = None,
        *,
        password: str | None = None,
        health_timeout_sec: float = 60.0,
        health_poll_interval_sec: float = 1.0,
        agentcore_client: Any | None = None,
        ec2_client: Any | None = None,
    ):
        self.config = config or AgentCoreConfig()
        self.password = password
        self.health_timeout_sec = health_timeout_sec
        self.health_poll_interval_sec = health_poll_interval_sec
        if agentcore_client is None or ec2_client is None:
            session = boto3.Session(region_name=self.config.region)
            agentcore_client = agentcore_client or session.client("bedrock-agentcore")
            ec2_client = ec2_client or session.client("ec2")
        self.agentcore = agentcore_client
        self.volumes = EBSVolumeStore(
            ec2_client,
            availability_zone=self.config.availability_zone,
            size_gb=self.config.volume_size_gb,
            volume_type=self.config.volume_type,
            kms_key_id=self.config.kms_key_id,
            managed_by=self.config.managed_by,
        )

    # ==================== SandboxBackend ====================

    def get_or_create_session(self, thread_id: str, user_id: str) -> SandboxSession:
        logger.info("Getting or creating AgentCore sandbox for thread %s (user=%s)", thread_id, user_id)
        volume_id = self.volumes.ensure_volume(thread_id)
        name = self.session_name(thread_id)

        existing = self._find_ready_session(name)
        if existing:
            logger.info("Reusing AgentCore session %s for thread %s", existing, thread_id)
            return self._session(thread_id, existing, volume_id)

        try:
            result = self.agentcore.start_code_interpreter_session(
                codeInterpreterIdentifier=self.config.code_interpreter_identifier,
                name=name,
                sessionTimeoutSeconds=self.config.session_timeout_sec,
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientBackendError(f"start_code_interpreter_session failed for thread {thread_id}: {exc}") from exc

        session_id = result["sessionId"]
        logger.info("AgentCore session %s started for thread %s", session_id, thread_id)

        if not self._wait_for_ready(session_id):
            self.stop_sandbox(session_id)
            raise ProvisionError(
                thread_id,
                f"AgentCore session {session_id} not ready after {self.health_timeout_sec}s",
            )

        return self._session(thread_id, session_id, volume_id)

    def stop_sandbox(self, session_id: str) -> None:
        logger.info("Stopping AgentCore session %s", session_id)
        try:
            self.agentcore.stop_code_interpreter_session(
                codeInterpreterIdentifier=self.config.code_interpreter_identifier,
                sessionId=session_id,
            )
            logger.info("AgentCore session %s stopped", session_id)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                logger.warning("AgentCore session %s not found, nothing to stop", session_id)
                return
            logger.warning("Failed to stop AgentCore session %s: %s", session_id, exc)
        except BotoCoreError as exc:
            logger.warning("Failed to stop AgentCore session %s: %s", session_id, exc)

    def is_sandbox_active(self, session_id: str) -> bool:
        status = self._session_status(session_id)
        return status is not None and status not in DEAD_STATUSES

    def create_client_for_session(self, session_id: str, endpoint: str | None = None) -> SandboxClient:
        return SandboxClient(endpoint or self.config.endpoint_url, password=self.password)

    # ==================== Internals ====================

    def session_name(self, thread_id: str) -> str:
        name = f"{self.config.managed_by}-{thread_slug(thread_id)}"
        if len(name) <= SESSION_NAME_MAX:
            return name
        # Truncation must not merge long ids that share a prefix.
        digest = short_digest(thread_id)
        return f"{name[: SESSION_NAME_MAX - len(digest) - 1]}-{digest}"

    def _session_status(self, session_id: str) -> str | None:
        """Upper-cased session status; None when the session does not exist."""
        try:
            result = self.agentcore.get_code_interpreter_session(
                codeInterpreterIdentifier=self.config.code_interpreter_identifier,
                sessionId=session_id,
            )
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                return None
            raise TransientBackendError(f"get_code_interpreter_session failed for {session_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransientBackendError(f"get_code_interpreter_session failed for {session_id}: {exc}") from exc
        return str(result.get("status") or "").upper()

    def _find_ready_session(self, name: str) -> str | None:
        kwargs: dict[str, Any] = {
            "codeInterpreterIdentifier": self.config.code_interpreter_identifier,
            "status": READY_STATUS,
        }
        try:
            while True:
                page = self.agentcore.list_code_interpreter_sessions(**kwargs)
                for item in page.get("items") or []:
                    if item.get("name") == name:
                        return item["sessionId"]
                token = page.get("nextToken")
                if not token:
                    return None
                kwargs["nextToken"] = token
        except (ClientError, BotoCoreError) as exc:
            raise TransientBackendError(f"list_code_interpreter_sessions failed: {exc}") from exc

    def _wait_for_ready(self, session_id: str) -> bool:
        deadline = time.monotonic() + self.health_timeout_sec
        while True:
            try:
                status = self._session_status(session_id)
            except SandboxError as e:
                logger.debug("Readiness check for %s failed: %s", session_id, e)
                status = None
            if status == READY_STATUS:
                return True
            if status in DEAD_STATUSES:
                logger.warning("AgentCore session %s entered %s while provisioning", session_id, status)
                return False
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.health_poll_interval_sec)

    def _session(self, thread_id: str, session_id: str, volume_id: str) -> SandboxSession:
        endpoint = self.config.endpoint_url
        return SandboxSession(
            thread_id=thread_id,
            session_id=session_id,
            volume_id=volume_id,
            endpoint=endpoint,
            client=self.create_client_for_session(session_id, endpoint),
        )
