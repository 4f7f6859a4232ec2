"""
The agentd daemon.

Wires the lock, state file, session registry, launcher, control server,
sync client and health loop together, then waits for a shutdown request
and runs the teardown.

Startup order:
    1. Stop an outdated daemon (or exit if the current version already runs)
    2. Acquire the machine-wide lock
    3. Start the control server and publish the state file
    4. Register RPC handlers with the sync client and connect
    5. Start the health loop
"""

import asyncio
import os
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from .control_api import ControlSurface
from .control_client import is_daemon_running_current_version, stop_daemon
from .control_server import ControlServer
from .daemon_state import (
    STATUS_SHUTTING_DOWN,
    DaemonPersistedState,
    clear_daemon_state,
    now_timestamp,
    read_daemon_state,
    write_daemon_state,
)
from .exceptions import AgentdError
from .health import HealthLoop
from .implementations import OfflineSyncClient, RealProcessControl
from .launcher import SessionLauncher
from .logging_config import get_logger, log_section, setup_daemon_logging
from .pid_utils import DaemonLock, acquire_daemon_lock, release_daemon_lock
from .profiles import ProfileStore
from .protocols import MultiplexerInterface, ProcessControl, SyncClient
from .session_registry import SessionRegistry
from .settings import (
    DaemonSettings,
    Paths,
    ensure_home_dir,
    get_cli_command,
    get_daemon_settings,
    get_installed_version,
    get_paths,
)
from .shutdown import ShutdownCoordinator, ShutdownRequest, TeardownStep
from .tmux_utils import TmuxUtilities

logger = get_logger("daemon")

# Give an acknowledged status push a moment to leave the process
STATUS_PUSH_GRACE = 0.1


class AgentDaemon:
    """One daemon run, from startup to process exit."""

    def __init__(
        self,
        settings: Optional[DaemonSettings] = None,
        paths: Optional[Paths] = None,
        process_control: Optional[ProcessControl] = None,
        tmux: Optional[MultiplexerInterface] = None,
        sync_client: Optional[SyncClient] = None,
        profiles: Optional[ProfileStore] = None,
        log_path: Optional[Path] = None,
        version: Optional[str] = None,
        handle_signals: bool = True,
    ):
        """Initialize the daemon.

        Args:
            settings: Timing knobs (default: resolved from env/config)
            paths: Filesystem locations (default: from AGENTD_HOME_DIR)
            process_control: OS process operations (injectable for testing)
            tmux: tmux backend (injectable for testing)
            sync_client: Remote channel (default: offline, local API only)
            profiles: Profile store (default: <home>/settings.json)
            log_path: Log file of this run, published in the state file
            version: Version this daemon runs (default: installed version)
            handle_signals: Install OS signal and excepthook handlers
        """
        self.settings = settings or get_daemon_settings()
        self.paths = paths or get_paths()
        self.process = process_control or RealProcessControl()
        self.tmux = tmux or TmuxUtilities()
        self.sync = sync_client or OfflineSyncClient()
        self.profiles = profiles or ProfileStore(self.paths.settings_file)
        self.log_path = log_path
        self.version = version or get_installed_version()
        self.handle_signals = handle_signals

        self.shutdown: Optional[ShutdownCoordinator] = None
        self.registry = SessionRegistry(self.process)
        self.launcher = SessionLauncher(
            self.registry,
            self.tmux,
            self.settings,
            profiles=self.profiles,
            codex_home=self.paths.codex_home_dir,
        )
        self.lock: Optional[DaemonLock] = None
        self.control_server: Optional[ControlServer] = None
        self.health: Optional[HealthLoop] = None
        self.state: Optional[DaemonPersistedState] = None

    # ------------------------------------------------------------------
    # Shutdown triggers
    # ------------------------------------------------------------------

    def request_shutdown(self, source: str, error_message: Optional[str] = None) -> bool:
        if self.shutdown is None:
            raise AgentdError("Daemon has not been started")
        return self.shutdown.request_shutdown(source, error_message)

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)
        loop.set_exception_handler(self._on_loop_exception)

        def excepthook(exc_type, exc, tb):
            logger.error("Uncaught exception", exc_info=(exc_type, exc, tb))
            loop.call_soon_threadsafe(self.request_shutdown, "exception", str(exc))

        sys.excepthook = excepthook

    def _on_signal(self, sig: int) -> None:
        logger.info(f"Received {signal.Signals(sig).name}")
        self.request_shutdown("os-signal")

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        message = context.get("message") or str(exc)
        logger.error(f"Unhandled error in event loop: {message}", exc_info=exc)
        self.request_shutdown("exception", str(exc) if exc else message)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start, wait for a shutdown request, tear down, exit."""
        loop = asyncio.get_running_loop()
        self.shutdown = ShutdownCoordinator(self.process, self.settings.startup_fallback_timeout)
        if self.handle_signals:
            self._install_handlers(loop)

        try:
            if not await self._start():
                return
        except Exception as e:
            logger.error(f"Failed somewhere unexpectedly - exiting with code 1: {e}", exc_info=True)
            self.process.exit(1)
            return

        self.shutdown.mark_started()
        request = await self.shutdown.wait_for_request()
        await self.shutdown.run_teardown(self._teardown_steps(request))

    async def _start(self) -> bool:
        """Bring every component up. Returns False if this run should end quietly."""
        log_section(logger, "agentd daemon")
        logger.info(f"PID: {self.process.pid()}")
        logger.info(f"Version: {self.version}")
        logger.info(f"Home: {self.paths.home_dir}")

        state_file = self.paths.daemon_state_file
        if await asyncio.to_thread(is_daemon_running_current_version, state_file):
            logger.info("Daemon with the current version is already running, exiting")
            self.process.exit(0)
            return False

        existing = await asyncio.to_thread(read_daemon_state, state_file)
        if existing is not None and existing.pid != self.process.pid():
            logger.info(
                f"Stopping daemon PID {existing.pid} started with version {existing.started_with_cli_version}"
            )
            await asyncio.to_thread(stop_daemon, state_file)

        self.lock = await asyncio.to_thread(
            acquire_daemon_lock,
            self.paths.daemon_lock_file,
            self.settings.lock_max_retries,
            self.settings.lock_retry_delay,
            self.process.pid(),
        )
        if self.lock is None:
            logger.info("Daemon lock file already held, another daemon is probably running")
            self.process.exit(0)
            return False

        surface = ControlSurface(self.launcher, self.registry, self.request_shutdown)
        self.control_server = ControlServer(surface)
        port = await self.control_server.start()

        self.state = DaemonPersistedState(
            pid=self.process.pid(),
            http_port=port,
            start_time=now_timestamp(),
            started_with_cli_version=self.version,
            daemon_log_path=str(self.log_path or ""),
        )
        await asyncio.to_thread(write_daemon_state, self.state, state_file)
        logger.info(f"Daemon state written (port {port})")

        self.sync.set_rpc_handlers(surface.rpc_handlers())
        await self.sync.connect()

        self.health = HealthLoop(
            self.registry,
            self.process,
            self.state,
            self.request_shutdown,
            interval=self.settings.heartbeat_interval,
            restart_hang_timeout=self.settings.restart_hang_timeout,
            state_path=state_file,
        )
        self.health.start()
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _teardown_steps(self, request: ShutdownRequest) -> List[TeardownStep]:
        state_file = self.paths.daemon_state_file
        steps: List[TeardownStep] = []
        if self.health is not None:
            steps.append(("stop health loop", self.health.stop))
        # Control server cleanup waits for in-flight handlers, so spawn waiters go first
        steps.append(("cancel pending spawns", self._cancel_pending))
        steps.append(("push shutdown status", lambda: self._push_shutdown_status(request)))
        steps.append(("stop sync client", self.sync.shutdown))
        if self.control_server is not None:
            steps.append(("stop control server", self.control_server.stop))
        steps.append(("stop child watchers", self.launcher.close))
        steps.append(("clear daemon state", lambda: clear_daemon_state(state_file)))
        if self.lock is not None:
            steps.append(("release lock", lambda: release_daemon_lock(self.lock)))
        return steps

    async def _push_shutdown_status(self, request: ShutdownRequest) -> None:
        """Tell upstream we are going away, within shutdown_push_timeout."""
        if self.state is not None:
            self.state.status = STATUS_SHUTTING_DOWN
            self.state.shutdown_source = request.source
            self.state.shutdown_requested_at = request.requested_at
            await asyncio.to_thread(write_daemon_state, self.state, self.paths.daemon_state_file)

        def updater(current: Optional[dict]) -> dict:
            return {
                **(current or {}),
                "status": STATUS_SHUTTING_DOWN,
                "shutdownSource": request.source,
                "shutdownRequestedAt": request.requested_at,
            }

        timeout = self.settings.shutdown_push_timeout
        try:
            updated = await asyncio.wait_for(self.sync.update_daemon_state_once(updater, timeout), timeout)
        except asyncio.TimeoutError:
            updated = False
        if not updated:
            logger.debug("Failed to persist shutdown state in time, continuing shutdown")
        else:
            await asyncio.sleep(STATUS_PUSH_GRACE)

    def _cancel_pending(self) -> None:
        count = self.registry.cancel_all_pending()
        if count:
            logger.debug(f"Cancelled {count} pending spawn(s); their processes keep running")


def run_daemon(foreground: bool = True) -> None:
    """Entry point for ``agentd daemon start-sync``."""
    paths = ensure_home_dir()
    log_path = setup_daemon_logging(paths.logs_dir, foreground=foreground)
    daemon = AgentDaemon(paths=paths, log_path=log_path)
    asyncio.run(daemon.run())


def start_daemon_background(
    timeout: float = 5.0,
    process_control: Optional[ProcessControl] = None,
) -> Optional[DaemonPersistedState]:
    """Launch ``daemon start-sync`` detached and wait for its state file.

    Returns:
        The new daemon's state, or None if it did not come up in time
    """
    process = process_control or RealProcessControl()
    paths = ensure_home_dir()
    pid = process.spawn_detached(get_cli_command("daemon", "start-sync"), env=dict(os.environ))
    if pid is None:
        return None

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        state = read_daemon_state(paths.daemon_state_file)
        if state is not None and process.is_alive(state.pid):
            return state
        time.sleep(0.1)
    return None
