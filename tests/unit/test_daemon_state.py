"""Tests for daemon_state module."""

import json

from agentd.daemon_state import (
    STATUS_RUNNING,
    STATUS_SHUTTING_DOWN,
    DaemonPersistedState,
    clear_daemon_state,
    read_daemon_state,
    write_daemon_state,
)


def make_state(**overrides):
    data = dict(
        pid=1234,
        http_port=5555,
        start_time="2026-01-01T10:00:00",
        started_with_cli_version="0.4.0",
        daemon_log_path="/tmp/daemon.log",
    )
    data.update(overrides)
    return DaemonPersistedState(**data)


class TestDaemonPersistedState:
    """Tests for the on-disk shape."""

    def test_to_dict_uses_camel_case(self):
        data = make_state(last_heartbeat="2026-01-01T10:01:00").to_dict()

        assert data == {
            "pid": 1234,
            "httpPort": 5555,
            "startTime": "2026-01-01T10:00:00",
            "startedWithCliVersion": "0.4.0",
            "daemonLogPath": "/tmp/daemon.log",
            "status": STATUS_RUNNING,
            "lastHeartbeat": "2026-01-01T10:01:00",
        }

    def test_optional_fields_omitted_when_unset(self):
        data = make_state().to_dict()

        assert "lastHeartbeat" not in data
        assert "shutdownSource" not in data

    def test_from_dict_defaults(self):
        state = DaemonPersistedState.from_dict({"pid": "7", "httpPort": 80})

        assert state.pid == 7
        assert state.status == STATUS_RUNNING
        assert state.last_heartbeat is None


class TestStateFile:
    """Tests for write/read/clear."""

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "daemon.state.json"
        state = make_state(status=STATUS_SHUTTING_DOWN, shutdown_source="cli")

        write_daemon_state(state, path)

        assert read_daemon_state(path) == state

    def test_default_path_is_under_home(self, isolated_home):
        write_daemon_state(make_state())

        assert (isolated_home / "daemon.state.json").exists()
        assert read_daemon_state().pid == 1234

    def test_write_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "daemon.state.json"
        write_daemon_state(make_state(), path)
        write_daemon_state(make_state(pid=99), path)

        assert [p.name for p in tmp_path.iterdir()] == ["daemon.state.json"]
        assert json.loads(path.read_text())["pid"] == 99

    def test_read_missing_returns_none(self, tmp_path):
        assert read_daemon_state(tmp_path / "missing.json") is None

    def test_read_corrupt_returns_none(self, tmp_path):
        path = tmp_path / "daemon.state.json"
        path.write_text("{not json")

        assert read_daemon_state(path) is None

    def test_read_missing_keys_returns_none(self, tmp_path):
        path = tmp_path / "daemon.state.json"
        path.write_text(json.dumps({"httpPort": 1}))

        assert read_daemon_state(path) is None

    def test_clear_tolerates_absence(self, tmp_path):
        path = tmp_path / "daemon.state.json"
        clear_daemon_state(path)
        write_daemon_state(make_state(), path)

        clear_daemon_state(path)

        assert not path.exists()
