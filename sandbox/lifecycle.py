"""Session status contract.

Status writes are last-write-wins; only the value itself is validated.
Invalid status strings raise immediately.
"""

from __future__ import annotations

from enum import StrEnum


class SessionStatus(StrEnum):
    ACTIVE = "active"
    IDLE = "idle"
    STOPPED = "stopped"


LIVE_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.IDLE})


def parse_session_status(value: str | None) -> SessionStatus:
    if value is None:
        raise ValueError("Session status is required")
    try:
        return SessionStatus(value.lower())
    except ValueError as e:
        raise ValueError(f"Invalid session status: {value}") from e


def is_live(status: str | SessionStatus) -> bool:
    return parse_session_status(str(status)) in LIVE_STATUSES
