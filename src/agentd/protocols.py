"""
Protocol definitions for external dependencies.

These interfaces allow dependency injection for testing, enabling us to
swap real implementations (signals, process exit, tmux, the remote sync
channel) with fakes in tests.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class ProcessControl(Protocol):
    """Interface for OS process operations."""

    def pid(self) -> int:
        """PID of the current process."""
        ...

    def is_alive(self, pid: int) -> bool:
        """Zero-effect liveness probe (signal 0)."""
        ...

    def kill(self, pid: int, sig: int) -> bool:
        """Send a signal to a raw PID.

        Returns:
            True if delivered, False otherwise. Never raises.
        """
        ...

    def spawn_detached(self, command: List[str], env: Optional[Dict[str, str]] = None) -> Optional[int]:
        """Start a process in its own session, not waited on.

        Returns:
            PID of the new process, or None on failure
        """
        ...

    def exit(self, code: int) -> None:
        """Terminate the current process."""
        ...


@dataclass
class TmuxSpawnOptions:
    """Where to open the new tmux window.

    An empty session_name means "current/most recent session".
    """

    session_name: str
    window_name: str
    cwd: Optional[str] = None


@dataclass
class TmuxSpawnResult:
    success: bool
    session_id: Optional[str] = None
    pid: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class MultiplexerInterface(Protocol):
    """Interface for launching commands inside tmux."""

    def is_available(self) -> bool:
        """Check if tmux can be used on this machine."""
        ...

    def spawn_in_tmux(
        self,
        command: List[str],
        options: TmuxSpawnOptions,
        env: Dict[str, str],
    ) -> TmuxSpawnResult:
        """Run command in a new window, passing env explicitly.

        Returns:
            TmuxSpawnResult with the PID of the process running in the pane
        """
        ...


RpcHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
DaemonStateUpdater = Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]


@runtime_checkable
class SyncClient(Protocol):
    """Interface for the remote channel that delivers spawn/stop requests."""

    def set_rpc_handlers(self, handlers: Dict[str, RpcHandler]) -> None:
        """Register remote-callable operations by method name."""
        ...

    async def connect(self) -> None:
        ...

    async def update_daemon_state_once(self, updater: DaemonStateUpdater, timeout: float) -> bool:
        """Push one daemon-state update upstream.

        Returns:
            True if the update was acknowledged within timeout
        """
        ...

    async def shutdown(self) -> None:
        ...
