"""Tests for settings module."""

import sys
from pathlib import Path

import yaml

from agentd.settings import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_SPAWN_TIMEOUT,
    ensure_home_dir,
    get_agent_command,
    get_cli_command,
    get_daemon_settings,
    get_home_dir,
    get_paths,
)


class TestPaths:
    """Tests for home directory and path resolution."""

    def test_home_dir_from_env(self, isolated_home):
        assert get_home_dir() == isolated_home

    def test_home_dir_expands_tilde(self, monkeypatch):
        monkeypatch.setenv("AGENTD_HOME_DIR", "~/custom-agentd")

        assert get_home_dir() == Path.home() / "custom-agentd"

    def test_home_dir_default(self, monkeypatch):
        monkeypatch.delenv("AGENTD_HOME_DIR")

        assert get_home_dir() == Path.home() / ".agentd"

    def test_file_locations(self, isolated_home):
        paths = get_paths()

        assert paths.daemon_state_file == isolated_home / "daemon.state.json"
        assert paths.daemon_lock_file == isolated_home / "daemon.state.json.lock"
        assert paths.settings_file == isolated_home / "settings.json"
        assert paths.config_file == isolated_home / "config.yaml"
        assert paths.logs_dir == isolated_home / "logs"

    def test_ensure_home_dir_creates_logs(self, isolated_home):
        paths = ensure_home_dir()

        assert paths.logs_dir.is_dir()


class TestDaemonSettings:
    """Tests for get_daemon_settings precedence."""

    def test_defaults(self):
        settings = get_daemon_settings()

        assert settings.heartbeat_interval == DEFAULT_HEARTBEAT_INTERVAL
        assert settings.spawn_timeout == DEFAULT_SPAWN_TIMEOUT

    def test_env_values_are_milliseconds(self, monkeypatch):
        monkeypatch.setenv("AGENTD_DAEMON_HEARTBEAT_INTERVAL", "5000")
        monkeypatch.setenv("AGENTD_SPAWN_TIMEOUT", "250")

        settings = get_daemon_settings()

        assert settings.heartbeat_interval == 5.0
        assert settings.spawn_timeout == 0.25

    def test_spawn_timeout_independent_of_heartbeat(self, monkeypatch):
        monkeypatch.setenv("AGENTD_DAEMON_HEARTBEAT_INTERVAL", "1000")

        settings = get_daemon_settings()

        assert settings.heartbeat_interval == 1.0
        assert settings.spawn_timeout == DEFAULT_SPAWN_TIMEOUT

    def test_invalid_env_falls_back(self, monkeypatch):
        monkeypatch.setenv("AGENTD_DAEMON_HEARTBEAT_INTERVAL", "soon")

        assert get_daemon_settings().heartbeat_interval == DEFAULT_HEARTBEAT_INTERVAL

    def test_config_file_values(self, isolated_home):
        (isolated_home / "config.yaml").write_text(
            yaml.safe_dump({"daemon": {"heartbeat_interval": 30, "restart_hang_timeout": 2}})
        )

        settings = get_daemon_settings()

        assert settings.heartbeat_interval == 30.0
        assert settings.restart_hang_timeout == 2.0

    def test_env_beats_config(self, isolated_home, monkeypatch):
        (isolated_home / "config.yaml").write_text(yaml.safe_dump({"daemon": {"spawn_timeout": 30}}))
        monkeypatch.setenv("AGENTD_SPAWN_TIMEOUT", "2000")

        assert get_daemon_settings().spawn_timeout == 2.0


class TestCommands:
    """Tests for command line builders."""

    def test_agent_command(self, monkeypatch):
        monkeypatch.delenv("AGENTD_CODEX_COMMAND", raising=False)

        assert get_agent_command("codex") == ["codex", "--starting-mode", "remote", "--started-by", "daemon"]

    def test_agent_command_override(self, monkeypatch):
        monkeypatch.setenv("AGENTD_CLAUDE_COMMAND", "/opt/mock-claude")

        assert get_agent_command("claude")[0] == "/opt/mock-claude"

    def test_cli_command_uses_current_interpreter(self):
        assert get_cli_command("daemon", "start") == [sys.executable, "-m", "agentd", "daemon", "start"]
