"""
Daemon state persistence.

The daemon publishes a small heartbeat snapshot so the CLI (and a second
daemon racing for the lock) can discover the running instance: its PID,
control port, version and last heartbeat.
"""

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .settings import get_paths


STATUS_OFFLINE = "offline"
STATUS_RUNNING = "running"
STATUS_SHUTTING_DOWN = "shutting-down"


def now_timestamp() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class DaemonPersistedState:
    """Snapshot written to daemon.state.json."""

    pid: int
    http_port: int
    start_time: str
    started_with_cli_version: str
    daemon_log_path: str
    last_heartbeat: Optional[str] = None
    status: str = STATUS_RUNNING
    shutdown_source: Optional[str] = None
    shutdown_requested_at: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to the on-disk JSON shape."""
        data = {
            "pid": self.pid,
            "httpPort": self.http_port,
            "startTime": self.start_time,
            "startedWithCliVersion": self.started_with_cli_version,
            "daemonLogPath": self.daemon_log_path,
            "status": self.status,
        }
        if self.last_heartbeat is not None:
            data["lastHeartbeat"] = self.last_heartbeat
        if self.shutdown_source is not None:
            data["shutdownSource"] = self.shutdown_source
        if self.shutdown_requested_at is not None:
            data["shutdownRequestedAt"] = self.shutdown_requested_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DaemonPersistedState":
        return cls(
            pid=int(data["pid"]),
            http_port=int(data["httpPort"]),
            start_time=str(data.get("startTime", "")),
            started_with_cli_version=str(data.get("startedWithCliVersion", "")),
            daemon_log_path=str(data.get("daemonLogPath", "")),
            last_heartbeat=data.get("lastHeartbeat"),
            status=data.get("status", STATUS_RUNNING),
            shutdown_source=data.get("shutdownSource"),
            shutdown_requested_at=data.get("shutdownRequestedAt"),
        )


def _state_path(path: Optional[Path]) -> Path:
    return path or get_paths().daemon_state_file


def write_daemon_state(state: DaemonPersistedState, path: Optional[Path] = None) -> None:
    """Persist the snapshot atomically.

    Writes to a temp file in the same directory and renames it over the
    target, so readers see either the old or the new file, never a torn one.
    """
    target = _state_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(temp_name, target)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


def read_daemon_state(path: Optional[Path] = None) -> Optional[DaemonPersistedState]:
    """Load the snapshot. Returns None if missing or invalid."""
    target = _state_path(path)
    try:
        with open(target) as f:
            data = json.load(f)
        return DaemonPersistedState.from_dict(data)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, KeyError, ValueError, TypeError, OSError):
        return None


def clear_daemon_state(path: Optional[Path] = None) -> None:
    """Delete the snapshot, ignoring absence."""
    try:
        _state_path(path).unlink()
    except FileNotFoundError:
        pass
