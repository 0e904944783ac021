"""Tests for the idle reaper sweep and background loop."""

import asyncio
import sqlite3
from datetime import datetime, timedelta

import pytest

from sandbox.lifecycle import SessionStatus
from sandbox.manager import SandboxManager
from sandbox.config import ThreadboxConfig
from sandbox.reaper import idle_reaper_loop, run_idle_reaper_once, start_idle_reaper
from storage.state import LockPolicy
from tests.fakes.backend import FakeBackend


def _age_session(db_path, thread_id: str, seconds: int) -> None:
    stale = (datetime.now() - timedelta(seconds=seconds)).isoformat()
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("UPDATE sessions SET last_activity = ? WHERE thread_id = ?", (stale, thread_id))
        conn.commit()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def manager(db_path, backend):
    return SandboxManager(
        backend=backend,
        db_path=db_path,
        lock_policy=LockPolicy(ttl_ms=5000, attempts=1),
        idle_timeout_sec=60,
    )


def test_reaper_stops_only_idle_sessions(db_path, manager, backend):
    manager.get_or_create_session("idle", "U1")
    manager.get_or_create_session("busy", "U1")
    _age_session(db_path, "idle", 600)

    assert run_idle_reaper_once(manager) == 1

    idle = manager.get_session("idle")
    assert idle.status == SessionStatus.STOPPED
    assert idle.volume_id == "vol-idle"
    assert manager.get_session("busy").status == SessionStatus.ACTIVE
    assert backend.stopped == [idle.backend_session_id]


def test_reaper_ignores_stopped_sessions(db_path, manager, backend):
    manager.get_or_create_session("T1", "U1")
    _age_session(db_path, "T1", 600)
    assert run_idle_reaper_once(manager) == 1
    assert run_idle_reaper_once(manager) == 0
    assert len(backend.stopped) == 1


@pytest.mark.asyncio
async def test_reaper_loop_runs_until_cancelled(db_path, manager, backend):
    manager.get_or_create_session("T1", "U1")
    _age_session(db_path, "T1", 600)

    task = asyncio.create_task(idle_reaper_loop(manager, interval_sec=0.01))
    for _ in range(100):
        await asyncio.sleep(0.01)
        if manager.get_session("T1").status == SessionStatus.STOPPED:
            break
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert manager.get_session("T1").status == SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_reaper_loop_survives_sweep_errors(monkeypatch, manager):
    calls = []

    def boom():
        calls.append(1)
        raise RuntimeError("db unavailable")

    monkeypatch.setattr(manager, "enforce_idle_timeouts", boom)
    task = asyncio.create_task(idle_reaper_loop(manager, interval_sec=0.01))
    for _ in range(100):
        await asyncio.sleep(0.01)
        if len(calls) >= 2:
            break
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_start_idle_reaper_uses_configured_interval(db_path, manager):
    manager.get_or_create_session("T1", "U1")
    _age_session(db_path, "T1", 600)

    task = start_idle_reaper(manager, ThreadboxConfig(reaper_interval_sec=0.01))
    assert task.get_name() == "idle-reaper"
    for _ in range(100):
        await asyncio.sleep(0.01)
        if manager.get_session("T1").status == SessionStatus.STOPPED:
            break
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert manager.get_session("T1").status == SessionStatus.STOPPED
