"""
Periodic health check for the daemon.

Each tick prunes sessions whose process died, restarts the daemon when a
newer version was installed underneath it, makes sure no other daemon has
taken over the state file, and refreshes the heartbeat.

Ticks never overlap: a firing that arrives while the previous tick is
still running is counted and skipped.
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional

from .daemon_state import DaemonPersistedState, now_timestamp, read_daemon_state, write_daemon_state
from .logging_config import get_logger
from .protocols import ProcessControl
from .session_registry import SessionRegistry
from .settings import get_cli_command, get_installed_version

logger = get_logger("health")

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_AWAITING_EXTERNAL_TERMINATION = "awaiting-external-termination"
STATE_STOPPED = "stopped"


class HealthLoop:
    """Drives the heartbeat timer and runs one tick at a time."""

    def __init__(
        self,
        registry: SessionRegistry,
        process_control: ProcessControl,
        daemon_state: DaemonPersistedState,
        request_shutdown: Callable[[str, Optional[str]], bool],
        interval: float = 60.0,
        restart_hang_timeout: float = 10.0,
        state_path: Optional[Path] = None,
        version_reader: Callable[[], str] = get_installed_version,
    ):
        self.registry = registry
        self._process = process_control
        self.daemon_state = daemon_state
        self._request_shutdown = request_shutdown
        self.interval = interval
        self.restart_hang_timeout = restart_hang_timeout
        self.state_path = state_path
        self._version_reader = version_reader

        self.state = STATE_IDLE
        self.fired_count = 0
        self.executed_count = 0
        self.skipped_count = 0
        self._ticking = False
        self._timer: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

    @property
    def started_version(self) -> str:
        return self.daemon_state.started_with_cli_version

    def start(self) -> None:
        if self._timer is not None:
            return
        self.state = STATE_RUNNING
        self._timer = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Health loop started (interval {self.interval}s)")

    def stop(self) -> None:
        """Cancel the timer. An in-flight tick is left to finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.state != STATE_AWAITING_EXTERNAL_TERMINATION:
            self.state = STATE_STOPPED
        logger.debug("Health check interval cleared")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.fire()

    def fire(self) -> Optional[asyncio.Task]:
        """One timer firing. Returns the tick task, or None if skipped."""
        self.fired_count += 1
        if self._ticking:
            self.skipped_count += 1
            logger.debug("Previous health check still running; skipping this one")
            return None
        self._ticking = True
        self._current = asyncio.get_running_loop().create_task(self._guarded_tick())
        return self._current

    async def _guarded_tick(self) -> None:
        try:
            self.executed_count += 1
            await self.tick()
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
        finally:
            self._ticking = False

    async def tick(self) -> None:
        self.registry.prune_dead(self._process.is_alive)

        installed = await asyncio.to_thread(self._version_reader)
        if installed != self.started_version:
            await self._restart_for_new_version(installed)
            return

        on_disk = await asyncio.to_thread(read_daemon_state, self.state_path)
        own_pid = self._process.pid()
        if on_disk is not None and on_disk.pid != own_pid:
            logger.warning(
                f"State file is owned by PID {on_disk.pid}; another daemon was started without stopping us"
            )
            self._request_shutdown(
                "exception",
                "A different daemon was started without killing us. We should kill ourselves.",
            )
            return

        self.daemon_state.last_heartbeat = now_timestamp()
        try:
            await asyncio.to_thread(write_daemon_state, self.daemon_state, self.state_path)
            logger.debug(f"Health check completed at {self.daemon_state.last_heartbeat}")
        except OSError as e:
            logger.warning(f"Failed to write heartbeat: {e}")

    async def _restart_for_new_version(self, installed: str) -> None:
        """Hand over to a freshly started daemon running the new version.

        The new daemon stops this one when it sees the old version in the
        state file; if that never happens we exit on our own.
        """
        logger.info(
            f"Daemon is outdated ({self.started_version} -> {installed}), "
            "triggering self-restart with latest version"
        )
        self.stop()
        self.state = STATE_AWAITING_EXTERNAL_TERMINATION

        pid = self._process.spawn_detached(get_cli_command("daemon", "start"))
        if pid is None:
            logger.warning("Failed to spawn replacement daemon")

        logger.debug("Waiting for the new daemon to stop us")
        await asyncio.sleep(self.restart_hang_timeout)
        self._process.exit(0)
