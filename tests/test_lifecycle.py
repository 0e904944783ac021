import pytest

from sandbox.lifecycle import LIVE_STATUSES, SessionStatus, is_live, parse_session_status


def test_parse_session_status_rejects_invalid():
    with pytest.raises(ValueError, match="Invalid session status"):
        parse_session_status("weird")


def test_parse_session_status_requires_value():
    with pytest.raises(ValueError):
        parse_session_status(None)


def test_parse_session_status_is_case_insensitive():
    assert parse_session_status("ACTIVE") == SessionStatus.ACTIVE
    assert parse_session_status("stopped") == SessionStatus.STOPPED


def test_live_statuses():
    assert LIVE_STATUSES == {SessionStatus.ACTIVE, SessionStatus.IDLE}
    assert is_live("idle") is True
    assert is_live(SessionStatus.STOPPED) is False
