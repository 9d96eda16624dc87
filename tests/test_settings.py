import pytest
from pydantic import ValidationError

from conftest import make_settings


def test_defaults_keep_lock_longer_than_turn() -> None:
    settings = make_settings()
    assert settings.session_lock_timeout_seconds > settings.turn_timeout_seconds


def test_lock_timeout_must_exceed_turn_timeout() -> None:
    """A session lock that can expire mid-turn is rejected at startup."""
    with pytest.raises(ValidationError, match="session_lock_timeout_seconds"):
        make_settings(session_lock_timeout_seconds=60, turn_timeout_seconds=120)
    with pytest.raises(ValidationError):
        make_settings(session_lock_timeout_seconds=120, turn_timeout_seconds=120)


def test_search_top_k_bounds() -> None:
    assert make_settings(search_top_k=20).search_top_k == 20
    with pytest.raises(ValidationError):
        make_settings(search_top_k=0)
