"""Shared fixtures for the dispatch pipeline tests."""
import pytest

from merkle_chat.config import Settings
from merkle_chat.session_state import SessionState


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def offline_settings(tmp_path):
    return Settings(
        _env_file=None,
        api_key=None,
        use_offline_responder=True,
        offline_delay_ms=0,
        drain_spacing_ms=0,
        database_path=str(tmp_path / "chat.db"),
    )


@pytest.fixture
def live_settings(tmp_path):
    return Settings(
        _env_file=None,
        api_key="test-key",
        api_url="https://completions.test/v1",
        model="grok-test",
        timeout_ms=1000,
        max_retries=3,
        drain_spacing_ms=0,
        database_path=str(tmp_path / "chat.db"),
    )


@pytest.fixture
def state():
    return SessionState()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
