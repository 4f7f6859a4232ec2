"""
Unit tests for CLI using Typer.

These tests verify that the CLI correctly handles commands
using Typer's CliRunner.
"""

import json
import re
from unittest.mock import patch

from typer.testing import CliRunner

from agentd.cli import app
from agentd.daemon_state import DaemonPersistedState
from agentd.exceptions import ControlError, DaemonNotRunningError
from agentd.update import UpdateError


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return re.sub(r'\x1b\[[0-9;]*m', '', text)


runner = CliRunner()


def running_state(**overrides):
    values = dict(
        pid=1234,
        http_port=5678,
        start_time="2026-01-01T00:00:00",
        started_with_cli_version="0.4.0",
        daemon_log_path="/tmp/agentd.log",
        last_heartbeat="2026-01-01T00:01:00",
    )
    values.update(overrides)
    return DaemonPersistedState(**values)


class TestCLICommands:
    """Test CLI commands"""

    def test_main_help(self):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        output = strip_ansi(result.stdout)
        assert "daemon" in output
        assert "report-session" in output

    def test_daemon_help_lists_commands(self):
        result = runner.invoke(app, ["daemon", "--help"])

        output = strip_ansi(result.stdout)
        for command in ("start", "start-sync", "stop", "status", "list", "stop-session", "spawn", "update"):
            assert command in output


class TestDaemonStatus:
    def test_stopped(self):
        result = runner.invoke(app, ["daemon", "status"])

        assert result.exit_code == 0
        assert "stopped" in result.stdout

    def test_bare_daemon_shows_status(self):
        result = runner.invoke(app, ["daemon"])

        assert result.exit_code == 0
        assert "stopped" in result.stdout

    def test_running(self):
        with patch("agentd.control_client.check_if_daemon_running_and_clean_stale_state", return_value=True), \
                patch("agentd.daemon_state.read_daemon_state", return_value=running_state()), \
                patch("agentd.settings.get_installed_version", return_value="0.5.0"):
            result = runner.invoke(app, ["daemon", "status"])

        output = strip_ansi(result.stdout)
        assert result.exit_code == 0
        assert "PID 1234" in output
        assert "Port: 5678" in output
        assert "installed: 0.5.0" in output
        assert "Last heartbeat" in output


class TestDaemonStartStop:
    def test_start(self):
        with patch("agentd.daemon.start_daemon_background", return_value=running_state()) as mock_start:
            result = runner.invoke(app, ["daemon", "start", "--timeout", "2"])

        assert result.exit_code == 0
        assert "PID 1234" in result.stdout
        mock_start.assert_called_once_with(timeout=2.0)

    def test_start_failure(self):
        with patch("agentd.daemon.start_daemon_background", return_value=None):
            result = runner.invoke(app, ["daemon", "start"])

        assert result.exit_code == 1
        assert "did not start" in result.stdout

    def test_start_sync_runs_in_foreground(self):
        with patch("agentd.daemon.run_daemon") as mock_run:
            result = runner.invoke(app, ["daemon", "start-sync"])

        assert result.exit_code == 0
        mock_run.assert_called_once_with(foreground=True)

    def test_stop_when_not_running(self):
        result = runner.invoke(app, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "not running" in result.stdout

    def test_stop(self):
        with patch("agentd.control_client.check_if_daemon_running_and_clean_stale_state", return_value=True), \
                patch("agentd.control_client.stop_daemon", return_value=True):
            result = runner.invoke(app, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "Daemon stopped" in result.stdout

    def test_stop_failure(self):
        with patch("agentd.control_client.check_if_daemon_running_and_clean_stale_state", return_value=True), \
                patch("agentd.control_client.stop_daemon", return_value=False):
            result = runner.invoke(app, ["daemon", "stop"])

        assert result.exit_code == 1


class TestDaemonList:
    SESSIONS = [
        {"startedBy": "daemon", "sessionId": "abc", "pid": 10, "tmuxSessionId": "work:1"},
        {"startedBy": "external", "sessionId": "PID-11", "pid": 11, "tmuxSessionId": None},
    ]

    def test_table(self):
        with patch("agentd.control_client.list_daemon_sessions", return_value=self.SESSIONS):
            result = runner.invoke(app, ["daemon", "list"])

        assert result.exit_code == 0
        assert "abc" in result.stdout
        assert "PID-11" in result.stdout
        assert "work:1" in result.stdout

    def test_json(self):
        with patch("agentd.control_client.list_daemon_sessions", return_value=self.SESSIONS):
            result = runner.invoke(app, ["daemon", "list", "--json"])

        assert json.loads(result.stdout) == self.SESSIONS

    def test_empty(self):
        with patch("agentd.control_client.list_daemon_sessions", return_value=[]):
            result = runner.invoke(app, ["daemon", "list"])

        assert "No sessions" in result.stdout

    def test_not_running(self):
        result = runner.invoke(app, ["daemon", "list"])

        assert result.exit_code == 1
        assert "not running" in result.stdout


class TestDaemonStopSession:
    def test_stopped(self):
        with patch("agentd.control_client.stop_daemon_session", return_value=True) as mock_stop:
            result = runner.invoke(app, ["daemon", "stop-session", "abc"])

        assert result.exit_code == 0
        mock_stop.assert_called_once_with("abc")

    def test_not_found(self):
        with patch("agentd.control_client.stop_daemon_session", return_value=False):
            result = runner.invoke(app, ["daemon", "stop-session", "abc"])

        assert result.exit_code == 1
        assert "not found" in result.stdout


class TestDaemonSpawn:
    def test_success(self):
        reply = {"type": "success", "sessionId": "s-1", "message": "Spawned new session in tmux session 'work'."}
        with patch("agentd.control_client.spawn_daemon_session", return_value=reply) as mock_spawn:
            result = runner.invoke(app, ["daemon", "spawn", "/work", "--agent", "codex", "--tmux", "work"])

        assert result.exit_code == 0
        assert "s-1" in result.stdout
        mock_spawn.assert_called_once_with(
            "/work",
            agent="codex",
            approved_new_directory_creation=True,
            environment_variables={"TMUX_SESSION_NAME": "work"},
        )

    def test_needs_approval(self):
        reply = {"type": "requestToApproveDirectoryCreation", "directory": "/new"}
        with patch("agentd.control_client.spawn_daemon_session", return_value=reply) as mock_spawn:
            result = runner.invoke(app, ["daemon", "spawn", "/new", "--no-create-directory"])

        assert result.exit_code == 1
        assert "does not exist" in result.stdout
        assert mock_spawn.call_args.kwargs["approved_new_directory_creation"] is False
        assert mock_spawn.call_args.kwargs["environment_variables"] is None

    def test_error(self):
        reply = {"type": "error", "errorMessage": "Session webhook timeout for PID 5"}
        with patch("agentd.control_client.spawn_daemon_session", return_value=reply):
            result = runner.invoke(app, ["daemon", "spawn", "/work"])

        assert result.exit_code == 1
        assert "webhook timeout" in result.stdout

    def test_rejected_request(self):
        with patch("agentd.control_client.spawn_daemon_session", side_effect=ControlError("bad")):
            result = runner.invoke(app, ["daemon", "spawn", "/work"])

        assert result.exit_code == 1
        assert "bad" in result.stdout


class TestDaemonUpdate:
    def test_update(self):
        with patch("agentd.update.run_daemon_update", return_value="pip install -U agentd") as mock_update:
            result = runner.invoke(app, ["daemon", "update", "--quiet"])

        assert result.exit_code == 0
        mock_update.assert_called_once_with(quiet=True)

    def test_update_failure(self):
        with patch("agentd.update.run_daemon_update", side_effect=UpdateError("exited with code 1")):
            result = runner.invoke(app, ["daemon", "update"])

        assert result.exit_code == 1
        assert "Update failed" in result.stdout


class TestReportSession:
    def test_reports_with_metadata(self):
        with patch("agentd.control_client.notify_daemon_session_started") as mock_notify:
            result = runner.invoke(
                app, ["report-session", "s-1", "--pid", "77", "--meta", "path=/work", "--meta", "flavor=claude"]
            )

        assert result.exit_code == 0
        mock_notify.assert_called_once_with("s-1", {"path": "/work", "flavor": "claude", "hostPid": 77})

    def test_defaults_to_parent_pid(self):
        with patch("agentd.control_client.notify_daemon_session_started") as mock_notify, \
                patch("agentd.cli.session.os.getppid", return_value=555):
            runner.invoke(app, ["report-session", "s-1"])

        assert mock_notify.call_args.args[1]["hostPid"] == 555

    def test_invalid_meta(self):
        result = runner.invoke(app, ["report-session", "s-1", "--meta", "novalue"])

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.stdout

    def test_daemon_not_running(self):
        with patch("agentd.control_client.notify_daemon_session_started", side_effect=DaemonNotRunningError("x")):
            result = runner.invoke(app, ["report-session", "s-1", "--pid", "1"])

        assert result.exit_code == 1
