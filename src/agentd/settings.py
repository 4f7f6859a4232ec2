"""
Centralized settings for agentd.

Paths and timing knobs are resolved from the environment at call time so
tests (and the CLI) can redirect everything with ``AGENTD_HOME_DIR``.

Environment variables:
    AGENTD_HOME_DIR                    Base directory (default: ~/.agentd)
    AGENTD_DAEMON_HEARTBEAT_INTERVAL   Health loop interval in milliseconds
    AGENTD_SPAWN_TIMEOUT               Spawn correlation timeout in milliseconds
    AGENTD_<AGENT>_COMMAND             Override the agent CLI binary (e.g. AGENTD_CLAUDE_COMMAND)
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


SUPPORTED_AGENTS = ("claude", "codex", "gemini")

# Defaults (seconds)
DEFAULT_HEARTBEAT_INTERVAL = 60.0
DEFAULT_SPAWN_TIMEOUT = 15.0
DEFAULT_RESTART_HANG_TIMEOUT = 10.0
DEFAULT_STARTUP_FALLBACK_TIMEOUT = 1.0
DEFAULT_SHUTDOWN_PUSH_TIMEOUT = 1.5
DEFAULT_LOCK_MAX_RETRIES = 5
DEFAULT_LOCK_RETRY_DELAY = 0.2


@dataclass(frozen=True)
class Paths:
    """Filesystem locations used by the daemon."""

    home_dir: Path

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / "logs"

    @property
    def settings_file(self) -> Path:
        return self.home_dir / "settings.json"

    @property
    def config_file(self) -> Path:
        return self.home_dir / "config.yaml"

    @property
    def daemon_state_file(self) -> Path:
        return self.home_dir / "daemon.state.json"

    @property
    def daemon_lock_file(self) -> Path:
        return self.home_dir / "daemon.state.json.lock"

    @property
    def codex_home_dir(self) -> Path:
        return self.home_dir / "codex-home"


@dataclass(frozen=True)
class DaemonSettings:
    """Timing knobs for the daemon.

    spawn_timeout and heartbeat_interval are deliberately independent.
    """

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    spawn_timeout: float = DEFAULT_SPAWN_TIMEOUT
    restart_hang_timeout: float = DEFAULT_RESTART_HANG_TIMEOUT
    startup_fallback_timeout: float = DEFAULT_STARTUP_FALLBACK_TIMEOUT
    shutdown_push_timeout: float = DEFAULT_SHUTDOWN_PUSH_TIMEOUT
    lock_max_retries: int = DEFAULT_LOCK_MAX_RETRIES
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY


def get_home_dir() -> Path:
    """Get the agentd home directory, honouring AGENTD_HOME_DIR."""
    override = os.environ.get("AGENTD_HOME_DIR")
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".agentd"


def get_paths() -> Paths:
    return Paths(home_dir=get_home_dir())


def ensure_home_dir() -> Paths:
    """Create the home and logs directories if needed."""
    paths = get_paths()
    paths.home_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    return paths


def _env_millis(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value / 1000.0 if value > 0 else None


def get_daemon_settings() -> DaemonSettings:
    """Resolve daemon settings: env vars > config.yaml > defaults."""
    from .config import get_daemon_config

    cfg = get_daemon_config()
    heartbeat = _env_millis("AGENTD_DAEMON_HEARTBEAT_INTERVAL") or cfg.get(
        "heartbeat_interval", DEFAULT_HEARTBEAT_INTERVAL
    )
    spawn_timeout = _env_millis("AGENTD_SPAWN_TIMEOUT") or cfg.get(
        "spawn_timeout", DEFAULT_SPAWN_TIMEOUT
    )
    return DaemonSettings(
        heartbeat_interval=float(heartbeat),
        spawn_timeout=float(spawn_timeout),
        restart_hang_timeout=float(cfg.get("restart_hang_timeout", DEFAULT_RESTART_HANG_TIMEOUT)),
        startup_fallback_timeout=float(cfg.get("startup_fallback_timeout", DEFAULT_STARTUP_FALLBACK_TIMEOUT)),
        shutdown_push_timeout=float(cfg.get("shutdown_push_timeout", DEFAULT_SHUTDOWN_PUSH_TIMEOUT)),
        lock_max_retries=int(cfg.get("lock_max_retries", DEFAULT_LOCK_MAX_RETRIES)),
        lock_retry_delay=float(cfg.get("lock_retry_delay", DEFAULT_LOCK_RETRY_DELAY)),
    )


def get_installed_version() -> str:
    """Read the version currently installed on disk.

    Unlike ``agentd.__version__`` this is re-read on every call, so a
    long-running daemon notices when the package was upgraded under it.
    """
    toml = Path(__file__).resolve().parent.parent.parent / "pyproject.toml"
    if toml.is_file():
        import tomllib
        with open(toml, "rb") as f:
            return tomllib.load(f)["project"]["version"]
    from importlib.metadata import version
    return version("agentd")


def get_agent_command(agent: str) -> List[str]:
    """Build the command line that starts an agent session in remote mode.

    AGENTD_<AGENT>_COMMAND overrides the binary (used by tests with a mock).
    """
    binary = os.environ.get(f"AGENTD_{agent.upper()}_COMMAND", agent)
    return [binary, "--starting-mode", "remote", "--started-by", "daemon"]


def get_cli_command(*args: str) -> List[str]:
    """Command line that re-invokes this CLI with the current interpreter."""
    return [sys.executable, "-m", "agentd", *args]
