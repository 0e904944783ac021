"""Idle session reaper service."""

from __future__ import annotations

import asyncio
import logging

from sandbox.config import ThreadboxConfig
from sandbox.manager import SandboxManager

logger = logging.getLogger(__name__)


def run_idle_reaper_once(manager: SandboxManager) -> int:
    """Stop sandboxes idle past the manager's threshold. Volumes and rows are kept."""
    return manager.enforce_idle_timeouts()


async def idle_reaper_loop(manager: SandboxManager, interval_sec: float = 60.0) -> None:
    """Background task that periodically enforces idle timeouts. Runs until cancelled."""
    while True:
        try:
            count = await asyncio.to_thread(run_idle_reaper_once, manager)
            if count > 0:
                logger.info("[idle-reaper] stopped %d idle sandbox(es)", count)
        except Exception:
            logger.exception("[idle-reaper] sweep failed")
        await asyncio.sleep(interval_sec)


def start_idle_reaper(manager: SandboxManager, config: ThreadboxConfig) -> asyncio.Task:
    """Schedule the reaper on the running loop at config.reaper_interval_sec."""
    return asyncio.create_task(
        idle_reaper_loop(manager, config.reaper_interval_sec),
        name="idle-reaper",
    )
