"""Settings validation tests."""

import pytest
from pydantic import ValidationError

from reviewsync.config import Settings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.backoff_base_seconds == 1.0
    assert s.backoff_cap_seconds == 30.0
    assert s.handshake_timeout_seconds == 10.0
    assert s.cache_ttl_seconds["notifications:unread-count"] == 15.0


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("REVIEWSYNC_HANDSHAKE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("REVIEWSYNC_CACHE_TTL_SECONDS", '{"comments": 5}')
    s = Settings()
    assert s.handshake_timeout_seconds == 2.5
    assert s.cache_ttl_seconds == {"comments": 5.0}


def test_memory_backend_only_outside_production():
    assert Settings(change_stream_backend="memory", environment="test").change_stream_backend == "memory"
    with pytest.raises(ValidationError):
        Settings(change_stream_backend="memory", environment="production")


def test_unknown_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(change_stream_backend="kafka")


def test_backoff_bounds():
    with pytest.raises(ValidationError):
        Settings(backoff_base_seconds=0)
    with pytest.raises(ValidationError):
        Settings(backoff_base_seconds=10, backoff_cap_seconds=5)
