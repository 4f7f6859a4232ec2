"""
Unit test configuration for agentd.

Every test gets its own AGENTD_HOME_DIR so nothing touches ~/.agentd.
"""

import pytest

from agentd import config
from agentd.mocks import MockProcessControl, MockProcessFactory, MockSyncClient, MockTmux
from agentd.session_registry import SessionRegistry
from agentd.settings import DaemonSettings, get_paths


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    """Point AGENTD_HOME_DIR at a temp directory for every test."""
    home = tmp_path_factory.mktemp("agentd-home")
    monkeypatch.setenv("AGENTD_HOME_DIR", str(home))
    monkeypatch.setattr(config, "CONFIG_PATH", None)
    for var in (
        "AGENTD_DAEMON_HEARTBEAT_INTERVAL",
        "AGENTD_SPAWN_TIMEOUT",
        "AGENTD_DAEMON_UPDATE_COMMAND",
        "AGENTD_TMUX_SOCKET",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def paths(isolated_home):
    return get_paths()


@pytest.fixture
def process_control():
    return MockProcessControl()


@pytest.fixture
def registry(process_control):
    return SessionRegistry(process_control)


@pytest.fixture
def tmux():
    return MockTmux()


@pytest.fixture
def process_factory():
    return MockProcessFactory()


@pytest.fixture
def sync_client():
    return MockSyncClient()


@pytest.fixture
def fast_settings():
    """Settings with timeouts short enough for tests."""
    return DaemonSettings(
        heartbeat_interval=0.05,
        spawn_timeout=0.2,
        restart_hang_timeout=0.05,
        startup_fallback_timeout=0.1,
        shutdown_push_timeout=0.1,
        lock_max_retries=1,
        lock_retry_delay=0.01,
    )
