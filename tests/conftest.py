"""Root conftest — shared test configuration."""

import os

import pytest

# Ensure tests don't accidentally use real API keys
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-fake-key")

from turnloop.config import Settings, get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Deterministic settings: no .env, fast streaming timers."""
    return Settings(
        _env_file=None,
        agent_max_iterations=10,
        stream_inactivity_timeout_seconds=1.0,
        stream_progress_interval_seconds=0.01,
        stream_typewriter_delay_ms=0,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
    )
