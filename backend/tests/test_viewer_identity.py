from __future__ import annotations

from streamstats.services.identity import UNIDENTIFIED, resolve_viewer_key


def test_authenticated_user_wins_over_session():
    key = resolve_viewer_key("user-1", "session-1")
    assert key.kind == "authenticated"
    assert key.value == "user-1"
    assert key.storage_key == "user:user-1"
    assert key.is_identified is True


def test_session_used_when_user_missing():
    key = resolve_viewer_key(None, "session-1")
    assert key.kind == "anonymous"
    assert key.storage_key == "session:session-1"


def test_blank_values_count_as_absent():
    assert resolve_viewer_key("   ", " s-2 ").storage_key == "session:s-2"
    assert resolve_viewer_key("", "") == UNIDENTIFIED
    assert resolve_viewer_key(None, None).is_identified is False
    assert UNIDENTIFIED.storage_key is None
