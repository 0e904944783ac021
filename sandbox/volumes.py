"""Volume stores - idempotent ensure-exists for a thread's persistent storage.

Volumes are owned by the thread, never by a sandbox instance: nothing in this
module deletes one. Lookup is by deterministic name (Docker) or by tags (EBS),
so existing volumes are rediscovered after a restart without local state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from sandbox.allocator import volume_name
from sandbox.docker_cli import DockerCLI
from sandbox.errors import TransientBackendError

logger = logging.getLogger(__name__)

MANAGED_BY = "threadbox"


class VolumeStore(ABC):
    @abstractmethod
    def ensure_volume(self, thread_id: str) -> str:
        """Return the thread's volume id, creating the volume if absent."""


class DockerVolumeStore(VolumeStore):
    def __init__(self, cli: DockerCLI, managed_by: str = MANAGED_BY):
        self.cli = cli
        self.managed_by = managed_by

    def ensure_volume(self, thread_id: str) -> str:
        name = volume_name(thread_id)
        if self.cli.inspect("volume", name) is not None:
            return name
        # docker volume create is idempotent for an existing name, so a racing creator is harmless.
        self.cli.run(
            [
                "volume",
                "create",
                "--label",
                f"managed-by={self.managed_by}",
                "--label",
                "purpose=sandbox-workspace",
                "--label",
                f"thread-id={thread_id}",
                name,
            ]
        )
        logger.info("Created docker volume %s for thread %s", name, thread_id)
        return name


class EBSVolumeStore(VolumeStore):
    """EBS volumes tagged ThreadId/ManagedBy."""

    def __init__(
        self,
        ec2_client: Any,
        *,
        availability_zone: str | None,
        size_gb: int = 10,
        volume_type: str = "gp3",
        kms_key_id: str | None = None,
        managed_by: str = MANAGED_BY,
        wait_timeout_sec: float = 60.0,
    ):
        self.ec2 = ec2_client
        self.availability_zone = availability_zone
        self.size_gb = size_gb
        self.volume_type = volume_type
        self.kms_key_id = kms_key_id
        self.managed_by = managed_by
        self.wait_timeout_sec = wait_timeout_sec

    def find_volume(self, thread_id: str) -> str | None:
        try:
            result = self.ec2.describe_volumes(
                Filters=[
                    {"Name": "tag:ThreadId", "Values": [thread_id]},
                    {"Name": "tag:ManagedBy", "Values": [self.managed_by]},
                    {"Name": "status", "Values": ["available", "in-use"]},
                ]
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientBackendError(f"describe_volumes failed for thread {thread_id}: {exc}") from exc
        volumes = result.get("Volumes") or []
        return volumes[0]["VolumeId"] if volumes else None

    def ensure_volume(self, thread_id: str) -> str:
        existing = self.find_volume(thread_id)
        if existing:
            logger.info("Reusing EBS volume %s for thread %s", existing, thread_id)
            return existing

        if not self.availability_zone:
            raise ValueError("agentcore.availability_zone is required to create EBS volumes")

        params: dict[str, Any] = {
            "AvailabilityZone": self.availability_zone,
            "Size": self.size_gb,
            "VolumeType": self.volume_type,
            "Encrypted": True,
            "TagSpecifications": [
                {
                    "ResourceType": "volume",
                    "Tags": [
                        {"Key": "Name", "Value": f"{self.managed_by}-thread-{thread_id}"},
                        {"Key": "ThreadId", "Value": thread_id},
                        {"Key": "ManagedBy", "Value": self.managed_by},
                    ],
                }
            ],
        }
        if self.kms_key_id:
            params["KmsKeyId"] = self.kms_key_id

        try:
            volume_id = self.ec2.create_volume(**params)["VolumeId"]
            delay = 2
            self.ec2.get_waiter("volume_available").wait(
                VolumeIds=[volume_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max(1, int(self.wait_timeout_sec // delay))},
            )
        except (ClientError, BotoCoreError, WaiterError) as exc:
            raise TransientBackendError(f"EBS volume creation failed for thread {thread_id}: {exc}") from exc

        logger.info("Created EBS volume %s for thread %s", volume_id, thread_id)
        return volume_id
