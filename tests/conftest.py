"""Pytest configuration and fixtures."""

import pytest

from fleet_agent.infrastructure.config import AgentSettings
from tests.helpers import make_backend, make_identity


@pytest.fixture
def settings(tmp_path, monkeypatch) -> AgentSettings:
    """Settings with short intervals, isolated from any local config file."""
    monkeypatch.setenv("AGENT_CONFIG_FILE", str(tmp_path / "absent.yaml"))
    return AgentSettings(
        _env_file=None,
        backend_url="http://backend.test",
        registration_token="test-token",
        registration_attempts=2,
        base_retry_delay=0,
        max_retry_delay=0,
        heartbeat_interval=60,
        poll_interval=60,
        retention_interval=60,
        max_concurrent_jobs=2,
        process_kill_grace=1,
    )


@pytest.fixture
def backend():
    """Backend port fake."""
    return make_backend()


@pytest.fixture
def identity():
    return make_identity()
