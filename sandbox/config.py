"""Threadbox configuration.

Priority: explicit path > THREADBOX_CONFIG env > ~/.threadbox/config.json,
then environment overrides for the common knobs.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from storage.state import LockPolicy

DEFAULT_CONFIG_PATH = Path.home() / ".threadbox" / "config.json"


class DockerConfig(BaseModel):
    image: str = "threadbox-sandbox:latest"
    host: str = "localhost"
    container_port: int = 4096
    mount_path: str = "/home/sandbox/workspace"
    home: str = "/home/sandbox"
    max_port_attempts: int = 100
    command_timeout_sec: float = 30.0
    stop_grace_sec: int = 10


class AgentCoreConfig(BaseModel):
    region: str = "us-west-2"
    availability_zone: str | None = None
    code_interpreter_identifier: str = "aws.codeinterpreter.v1"
    endpoint_url: str = "http://localhost:4096"
    session_timeout_sec: int = 28800
    volume_size_gb: int = 10
    volume_type: str = "gp3"
    kms_key_id: str | None = None
    managed_by: str = "threadbox"


class LockConfig(BaseModel):
    ttl_ms: int = 120_000
    attempts: int = 10
    backoff_sec: float = 0.5
    max_backoff_sec: float = 5.0

    def policy(self) -> LockPolicy:
        return LockPolicy(
            ttl_ms=self.ttl_ms,
            attempts=self.attempts,
            backoff_sec=self.backoff_sec,
            max_backoff_sec=self.max_backoff_sec,
        )


class ThreadboxConfig(BaseModel):
    backend: Literal["remote", "local"] = "remote"
    db_path: Path | None = None
    log_level: str = "INFO"
    idle_timeout_sec: int = 30 * 60
    reaper_interval_sec: float = 60.0
    health_timeout_sec: float = 60.0
    health_poll_interval_sec: float = 1.0
    opencode_password: str | None = None
    docker: DockerConfig = Field(default_factory=DockerConfig)
    agentcore: AgentCoreConfig = Field(default_factory=AgentCoreConfig)
    lock: LockConfig = Field(default_factory=LockConfig)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level

    @classmethod
    def load(cls, path: str | Path | None = None) -> ThreadboxConfig:
        config_path = Path(path) if path else Path(os.getenv("THREADBOX_CONFIG") or DEFAULT_CONFIG_PATH)
        data: dict = {}
        if config_path.exists():
            data = json.loads(config_path.read_text())
        elif path is not None:
            raise FileNotFoundError(f"Threadbox config not found: {config_path}")

        # @@@env-overrides - deployment env wins over the file for secrets and backend selection.
        if os.getenv("THREADBOX_BACKEND"):
            data["backend"] = os.environ["THREADBOX_BACKEND"]
        if os.getenv("THREADBOX_DB_PATH"):
            data["db_path"] = os.environ["THREADBOX_DB_PATH"]
        if os.getenv("THREADBOX_LOG_LEVEL"):
            data["log_level"] = os.environ["THREADBOX_LOG_LEVEL"]
        if os.getenv("OPENCODE_SERVER_PASSWORD"):
            data["opencode_password"] = os.environ["OPENCODE_SERVER_PASSWORD"]
        if os.getenv("AWS_REGION"):
            data.setdefault("agentcore", {})["region"] = os.environ["AWS_REGION"]
        return cls(**data)


def configure_logging(level: str = "INFO") -> None:
    resolved = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # basicConfig is a no-op once handlers exist; the level still applies.
    logging.getLogger().setLevel(resolved)
